from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List

MESSAGE_KINDS = ("text", "image", "video", "voice", "file")


class InvalidRequest(ValueError):
    """A request is missing a required field or carries a malformed one."""


@dataclass
class Reaction:
    user_id: str
    emoji: str

    def to_dict(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "emoji": self.emoji}


@dataclass
class MessageBody:
    """The content of a message: plain text, or a stored media reference.

    For media kinds ``text`` is an optional caption and ``file_url`` is the
    opaque reference produced by the media store.
    """

    kind: str = "text"
    text: str = ""
    file_url: str | None = None
    file_name: str | None = None
    file_size: int | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "MessageBody":
        kind = payload.get("type") or "text"
        if kind not in MESSAGE_KINDS:
            raise InvalidRequest(f"unsupported message type: {kind}")
        text = payload.get("text") or ""
        if not isinstance(text, str):
            raise InvalidRequest("text must be a string")
        file_url = payload.get("file_url")
        file_name = payload.get("file_name")
        file_size = payload.get("file_size")
        if kind == "text":
            if not text.strip():
                raise InvalidRequest("text required")
            return cls(kind=kind, text=text)
        if not isinstance(file_url, str) or not file_url:
            raise InvalidRequest("file_url required for media messages")
        if file_name is not None and not isinstance(file_name, str):
            raise InvalidRequest("file_name must be a string")
        if file_size is not None and (not isinstance(file_size, int) or isinstance(file_size, bool) or file_size < 0):
            raise InvalidRequest("file_size must be a non-negative integer")
        return cls(kind=kind, text=text, file_url=file_url, file_name=file_name, file_size=file_size)


@dataclass
class Message:
    """A stored chat message.

    ``seq`` is assigned by the owning conversation and strictly increases in
    send order, so it totally orders history even when ``ts_ms`` collides.
    """

    msg_id: str
    seq: int
    conv_id: str
    sender_id: str
    body: MessageBody
    ts_ms: int
    sender_name: str | None = None
    sender_avatar: str | None = None
    edited: bool = False
    edited_at_ms: int | None = None
    reactions: List[Reaction] = field(default_factory=list)

    @property
    def text(self) -> str:
        return self.body.text

    def summary(self) -> str:
        if self.body.kind == "text" or self.body.text:
            return self.body.text
        return f"[{self.body.kind}]"

    def react(self, user_id: str, emoji: str) -> None:
        for reaction in self.reactions:
            if reaction.user_id == user_id:
                reaction.emoji = emoji
                return
        self.reactions.append(Reaction(user_id=user_id, emoji=emoji))

    def reactions_dict(self) -> list[dict[str, Any]]:
        return [reaction.to_dict() for reaction in self.reactions]

    def to_dict(self) -> dict[str, Any]:
        return {
            "msg_id": self.msg_id,
            "seq": self.seq,
            "conv_id": self.conv_id,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "sender_avatar": self.sender_avatar,
            "type": self.body.kind,
            "text": self.body.text,
            "file_url": self.body.file_url,
            "file_name": self.body.file_name,
            "file_size": self.body.file_size,
            "ts_ms": self.ts_ms,
            "edited": self.edited,
            "edited_at_ms": self.edited_at_ms,
            "reactions": self.reactions_dict(),
        }
