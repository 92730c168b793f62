from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set, Union

from .messages import InvalidRequest, Message, MessageBody
from .moderation import BlockList
from .sessions import _now_ms

logger = logging.getLogger(__name__)

DIRECT_SEPARATOR = ":"
GROUP_PREFIX = "group_"
MAX_MEMBERS_PER_GROUP = 1024

__all__ = [
    "ConversationStore",
    "ConversationSummary",
    "DirectConversation",
    "Forbidden",
    "Group",
    "InvalidRequest",
    "NotFound",
    "direct_conv_id",
    "is_group_id",
    "parse_direct_conv_id",
]


class NotFound(LookupError):
    pass


class Forbidden(PermissionError):
    pass


def direct_conv_id(user_a: str, user_b: str) -> str:
    """Return the canonical id shared by both participants of a direct chat."""

    first, second = sorted((user_a, user_b))
    return f"{first}{DIRECT_SEPARATOR}{second}"


def is_group_id(conv_id: str) -> bool:
    return conv_id.startswith(GROUP_PREFIX)


def parse_direct_conv_id(conv_id: str) -> tuple[str, str]:
    if not isinstance(conv_id, str) or is_group_id(conv_id):
        raise InvalidRequest("not a direct conversation id")
    parts = conv_id.split(DIRECT_SEPARATOR)
    if len(parts) != 2 or not all(parts) or parts[0] == parts[1]:
        raise InvalidRequest("malformed direct conversation id")
    if direct_conv_id(parts[0], parts[1]) != conv_id:
        raise InvalidRequest("direct conversation id is not canonical")
    return parts[0], parts[1]


@dataclass
class _MessageList:
    messages: List[Message] = field(default_factory=list)
    next_seq: int = 1

    def find(self, msg_id: str) -> Message | None:
        for message in self.messages:
            if message.msg_id == msg_id:
                return message
        return None

    def last(self) -> Message | None:
        return self.messages[-1] if self.messages else None


@dataclass
class DirectConversation(_MessageList):
    conv_id: str = ""
    participants: tuple[str, str] = ("", "")

    def other(self, user_id: str) -> str:
        first, second = self.participants
        return second if user_id == first else first


@dataclass
class Group(_MessageList):
    conv_id: str = ""
    name: str = ""
    creator_id: str = ""
    members: List[str] = field(default_factory=list)
    avatar: str | None = None
    created_at_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "group_id": self.conv_id,
            "name": self.name,
            "creator_id": self.creator_id,
            "members": list(self.members),
            "avatar": self.avatar,
            "created_at_ms": self.created_at_ms,
        }


Conversation = Union[DirectConversation, Group]


@dataclass
class ConversationSummary:
    conv_id: str
    kind: str
    last_message: Message | None
    timestamp: int
    counterpart_id: str | None = None
    group: Group | None = None


class ConversationStore:
    """Owns direct and group conversations and their message lists.

    Mutations that fail authorization or refer to a missing message return
    ``None``/``False`` instead of raising; callers treat that as a silent drop.
    Lookups raise :class:`NotFound`, :class:`Forbidden` or
    :class:`InvalidRequest` so they can be answered explicitly.
    """

    def __init__(self, blocks: BlockList | None = None, *, now_func=_now_ms) -> None:
        self.blocks = blocks or BlockList()
        self._now = now_func
        self._direct: Dict[str, DirectConversation] = {}
        self._direct_by_user: Dict[str, Set[str]] = {}
        self._groups: Dict[str, Group] = {}

    # lookups

    def get(self, conv_id: str) -> Conversation | None:
        if is_group_id(conv_id):
            return self._groups.get(conv_id)
        return self._direct.get(conv_id)

    def group(self, group_id: str) -> Group | None:
        return self._groups.get(group_id)

    def participants(self, conv_id: str) -> List[str]:
        """Return the user ids that belong to ``conv_id``, or ``[]`` if unknown.

        Direct conversations need no stored record: the participants are
        encoded in the id itself.
        """

        if is_group_id(conv_id):
            group = self._groups.get(conv_id)
            return list(group.members) if group is not None else []
        try:
            return list(parse_direct_conv_id(conv_id))
        except InvalidRequest:
            return []

    def can_view(self, conv_id: str, user_id: str) -> bool:
        return user_id in self.participants(conv_id)

    def list_conversations_for(self, user_id: str) -> List[ConversationSummary]:
        summaries: List[ConversationSummary] = []
        for conv_id in self._direct_by_user.get(user_id, set()):
            conversation = self._direct[conv_id]
            last = conversation.last()
            if last is None:
                continue
            summaries.append(
                ConversationSummary(
                    conv_id=conv_id,
                    kind="direct",
                    last_message=last,
                    timestamp=last.ts_ms,
                    counterpart_id=conversation.other(user_id),
                )
            )
        for group in self._groups.values():
            if user_id not in group.members:
                continue
            last = group.last()
            summaries.append(
                ConversationSummary(
                    conv_id=group.conv_id,
                    kind="group",
                    last_message=last,
                    timestamp=last.ts_ms if last is not None else group.created_at_ms,
                    group=group,
                )
            )
        return summaries

    def get_history(self, conv_id: str, requesting_user_id: str) -> List[Message]:
        """Return ``conv_id``'s messages as ``requesting_user_id`` may see them.

        Messages from senders the requester blocked are hidden, and a direct
        history is empty for a requester the counterpart has blocked.
        """

        if is_group_id(conv_id):
            group = self._groups.get(conv_id)
            if group is None:
                raise NotFound("unknown group")
            if requesting_user_id not in group.members:
                raise Forbidden("not a member of this group")
            messages = group.messages
        else:
            participants = parse_direct_conv_id(conv_id)
            if requesting_user_id not in participants:
                raise Forbidden("not a participant of this conversation")
            counterpart = participants[1] if participants[0] == requesting_user_id else participants[0]
            if self.blocks.is_blocked(counterpart, requesting_user_id):
                return []
            conversation = self._direct.get(conv_id)
            messages = conversation.messages if conversation is not None else []
        return [m for m in messages if not self.blocks.is_blocked(requesting_user_id, m.sender_id)]

    # messages

    def append_message(
        self,
        conv_id: str,
        sender_id: str,
        body: MessageBody,
        *,
        sender_name: str | None = None,
        sender_avatar: str | None = None,
    ) -> Message | None:
        if is_group_id(conv_id):
            conversation: Conversation | None = self._groups.get(conv_id)
            if conversation is None or sender_id not in conversation.members:
                logger.debug("dropping message from %s to unknown or foreign group %s", sender_id, conv_id)
                return None
        else:
            participants = parse_direct_conv_id(conv_id)
            if sender_id not in participants:
                logger.debug("dropping message from non-participant %s to %s", sender_id, conv_id)
                return None
            conversation = self._materialize_direct(conv_id, participants)

        message = Message(
            msg_id=f"m_{secrets.token_hex(8)}",
            seq=conversation.next_seq,
            conv_id=conv_id,
            sender_id=sender_id,
            body=body,
            ts_ms=self._now(),
            sender_name=sender_name,
            sender_avatar=sender_avatar,
        )
        conversation.next_seq += 1
        conversation.messages.append(message)
        return message

    def edit_message(self, conv_id: str, msg_id: str, requester_id: str, new_text: str) -> Message | None:
        message = self._find_message(conv_id, msg_id)
        if message is None or message.sender_id != requester_id:
            return None
        if message.body.kind == "text" and not new_text.strip():
            return None
        message.body.text = new_text
        message.edited = True
        message.edited_at_ms = self._now()
        return message

    def delete_message(self, conv_id: str, msg_id: str, requester_id: str) -> Message | None:
        conversation = self.get(conv_id)
        if conversation is None:
            return None
        message = conversation.find(msg_id)
        if message is None or message.sender_id != requester_id:
            return None
        conversation.messages.remove(message)
        return message

    def add_reaction(self, conv_id: str, msg_id: str, user_id: str, emoji: str) -> Message | None:
        if not self.can_view(conv_id, user_id):
            return None
        message = self._find_message(conv_id, msg_id)
        if message is None:
            return None
        message.react(user_id, emoji)
        return message

    def clear_history(self, conv_id: str, requester_id: str) -> bool:
        conversation = self.get(conv_id)
        if conversation is None:
            return False
        if isinstance(conversation, Group):
            if conversation.creator_id != requester_id:
                return False
        elif requester_id not in conversation.participants:
            return False
        conversation.messages.clear()
        return True

    def delete_conversation(self, conv_id: str, requester_id: str) -> bool:
        """Drop a direct conversation with all its messages for both participants."""

        if is_group_id(conv_id):
            return False
        conversation = self._direct.get(conv_id)
        if conversation is None or requester_id not in conversation.participants:
            return False
        self._direct.pop(conv_id, None)
        for user_id in conversation.participants:
            conv_ids = self._direct_by_user.get(user_id)
            if conv_ids is not None:
                conv_ids.discard(conv_id)
                if not conv_ids:
                    self._direct_by_user.pop(user_id, None)
        return True

    # groups

    def create_group(
        self, name: str, member_ids: Iterable[str], creator_id: str, avatar: str | None = None
    ) -> Group:
        if not isinstance(name, str) or not name.strip():
            raise InvalidRequest("group name required")
        members = _dedupe([*member_ids, creator_id])
        if len(members) > MAX_MEMBERS_PER_GROUP:
            raise InvalidRequest("too many members")
        group = Group(
            conv_id=f"{GROUP_PREFIX}{secrets.token_hex(8)}",
            name=name.strip(),
            creator_id=creator_id,
            members=members,
            avatar=avatar,
            created_at_ms=self._now(),
        )
        self._groups[group.conv_id] = group
        return group

    def add_members(self, group_id: str, requester_id: str, member_ids: Iterable[str]) -> List[str] | None:
        group = self._owned_group(group_id, requester_id)
        if group is None:
            return None
        added = [m for m in _dedupe(member_ids) if m not in group.members]
        if len(group.members) + len(added) > MAX_MEMBERS_PER_GROUP:
            return None
        group.members.extend(added)
        return added

    def remove_member(self, group_id: str, requester_id: str, member_id: str) -> bool:
        group = self._owned_group(group_id, requester_id)
        if group is None or member_id == group.creator_id or member_id not in group.members:
            return False
        group.members.remove(member_id)
        return True

    def leave_group(self, group_id: str, user_id: str) -> str | None:
        """Remove ``user_id`` from the group.

        Returns ``"deleted"`` when the creator leaves (which removes the whole
        group), ``"left"`` for any other member and ``None`` if nothing changed.
        """

        group = self._groups.get(group_id)
        if group is None or user_id not in group.members:
            return None
        if group.creator_id == user_id:
            self._groups.pop(group_id, None)
            return "deleted"
        group.members.remove(user_id)
        return "left"

    def rename_group(self, group_id: str, requester_id: str, name: str) -> bool:
        group = self._owned_group(group_id, requester_id)
        if group is None or not isinstance(name, str) or not name.strip():
            return False
        group.name = name.strip()
        return True

    def update_group(
        self, group_id: str, requester_id: str, *, name: str | None = None, avatar: str | None = None
    ) -> Group | None:
        group = self._owned_group(group_id, requester_id)
        if group is None:
            return None
        if name is not None:
            if not name.strip():
                return None
            group.name = name.strip()
        if avatar is not None:
            group.avatar = avatar
        return group

    def delete_group(self, group_id: str, requester_id: str) -> Group | None:
        group = self._owned_group(group_id, requester_id)
        if group is None:
            return None
        return self._groups.pop(group_id)

    def _owned_group(self, group_id: str, requester_id: str) -> Group | None:
        group = self._groups.get(group_id)
        if group is None:
            return None
        if group.creator_id != requester_id:
            logger.debug("%s is not the creator of %s", requester_id, group_id)
            return None
        return group

    def _find_message(self, conv_id: str, msg_id: str) -> Message | None:
        conversation = self.get(conv_id)
        if conversation is None:
            return None
        return conversation.find(msg_id)

    def _materialize_direct(self, conv_id: str, participants: tuple[str, str]) -> DirectConversation:
        conversation = self._direct.get(conv_id)
        if conversation is None:
            conversation = DirectConversation(conv_id=conv_id, participants=participants)
            self._direct[conv_id] = conversation
            for user_id in participants:
                self._direct_by_user.setdefault(user_id, set()).add(conv_id)
        return conversation


def _dedupe(user_ids: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for user_id in user_ids:
        if isinstance(user_id, str) and user_id:
            seen.setdefault(user_id, None)
    return list(seen)
