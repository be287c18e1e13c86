from typing import NamedTuple

POINTS_PER_APPROVED_CONFESSION = 10
POINTS_PER_COMMENT = 5


class Level(NamedTuple):
    level: int
    symbol: str

    @property
    def name(self) -> str:
        return f"Level {self.level}"

    def __str__(self):
        return f"{self.symbol} {self.name}"


# (minimum lifetime comments, level), highest first
LEVEL_THRESHOLDS = [
    (1000, Level(7, "👑")),
    (500, Level(6, "🏅")),
    (200, Level(5, "🥇")),
    (100, Level(4, "🥈")),
    (50, Level(3, "🥉")),
    (25, Level(2, "🥈")),
]
BASE_LEVEL = Level(1, "🥉")


def level_for(comment_count: int) -> Level:
    for threshold, level in LEVEL_THRESHOLDS:
        if comment_count >= threshold:
            return level
    return BASE_LEVEL
