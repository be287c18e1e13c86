from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"


@dataclass
class Confession:
    id: str
    user_id: int
    text: str
    confession_number: int
    created_at: str
    status: str = STATUS_PENDING
    hashtags: List[str] = field(default_factory=list)
    total_comments: int = 0
    likes: int = 0
    approved_at: Optional[str] = None
    rejected_at: Optional[str] = None
    rejection_reason: Optional[str] = None
    publishing_since: Optional[int] = None
    published_at: Optional[str] = None

    def to_doc(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Confession":
        return cls(**{key: doc[key] for key in cls.__dataclass_fields__ if key in doc})


@dataclass
class Comment:
    id: str
    user_id: int
    text: str
    user_name: str
    timestamp: str
    created_at: str

    def to_doc(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Comment":
        return cls(**{key: doc[key] for key in cls.__dataclass_fields__ if key in doc})


@dataclass
class CommentThread:
    confession_id: str
    confession_number: int
    confession_text: str
    channel_message_id: Optional[int] = None
    comments: List[Comment] = field(default_factory=list)
    total_comments: int = 0

    def to_doc(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "CommentThread":
        return cls(
            confession_id=doc["confession_id"],
            confession_number=doc["confession_number"],
            confession_text=doc["confession_text"],
            channel_message_id=doc.get("channel_message_id"),
            comments=[Comment.from_doc(c) for c in doc.get("comments") or []],
            total_comments=doc.get("total_comments", 0),
        )
