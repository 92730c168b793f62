"""Routing and fan-out of chat events to live connections.

Every public event method follows the same shape: apply one mutation to the
conversation store, then push the resulting frame to the recipient set that
the mutation defines. Nothing is queued for absent recipients; they pick up
the stored state on their next fetch.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, List

from .conversations import (
    ConversationStore,
    ConversationSummary,
    Group,
    InvalidRequest,
    is_group_id,
    parse_direct_conv_id,
)
from .hub import Frame, make_frame
from .messages import Message, MessageBody
from .moderation import BlockList
from .presence import PresenceRegistry
from .users import UserDirectory

logger = logging.getLogger(__name__)

RemovalListener = Callable[[str, List[str]], Any]


def _require_str(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidRequest(f"{name} required")
    return value


class Router:
    def __init__(
        self,
        *,
        presence: PresenceRegistry,
        store: ConversationStore,
        users: UserDirectory | None = None,
    ) -> None:
        self.presence = presence
        self.store = store
        self.users = users
        self._removal_listeners: List[RemovalListener] = []

    @property
    def blocks(self) -> BlockList:
        return self.store.blocks

    def on_conversation_removed(self, listener: RemovalListener) -> None:
        """Register ``listener(conv_id, members)`` to run when a group is deleted."""

        self._removal_listeners.append(listener)

    def _conversation_removed(self, conv_id: str, members: List[str]) -> None:
        for listener in self._removal_listeners:
            listener(conv_id, members)

    # recipient resolution

    def recipients(self, conv_id: str) -> List[str]:
        """Return the user ids that should receive events for ``conv_id``.

        Groups fan out to every member. A direct conversation reaches both
        participants except one who has blocked the other.
        """

        if is_group_id(conv_id):
            return self.store.participants(conv_id)
        try:
            first, second = parse_direct_conv_id(conv_id)
        except InvalidRequest:
            return []
        recipients = []
        if not self.blocks.is_blocked(first, second):
            recipients.append(first)
        if not self.blocks.is_blocked(second, first):
            recipients.append(second)
        return recipients

    def deliver(self, user_ids: Iterable[str], frame: Frame) -> int:
        targets = list(user_ids)
        connections = self.presence.connections(targets)
        for connection in connections:
            connection.deliver(frame)
        if len(connections) < len(set(targets)):
            logger.debug(
                "%s delivered to %d of %d recipients", frame.get("t"), len(connections), len(set(targets))
            )
        return len(connections)

    def send_to(self, user_id: str, frame: Frame) -> bool:
        return self.deliver([user_id], frame) == 1

    # request/response lookups

    def list_chats(self, user_id: str) -> List[dict[str, Any]]:
        chats = []
        for summary in self.store.list_conversations_for(user_id):
            entry = self._chat_entry(summary)
            if entry is not None:
                chats.append(entry)
        chats.sort(key=lambda chat: (-chat["timestamp"], chat["conv_id"]))
        return chats

    def history(self, conv_id: str, user_id: str) -> List[dict[str, Any]]:
        return [message.to_dict() for message in self.store.get_history(_require_str(conv_id, "conv_id"), user_id)]

    def is_blocked(self, user_id: str, other_user_id: str) -> bool:
        return self.blocks.is_blocked(user_id, _require_str(other_user_id, "user_id"))

    def _chat_entry(self, summary: ConversationSummary) -> dict[str, Any] | None:
        last = summary.last_message
        entry: dict[str, Any] = {
            "conv_id": summary.conv_id,
            "type": summary.kind,
            "last_message": last.summary() if last is not None else "",
            "timestamp": summary.timestamp,
        }
        if summary.group is not None:
            group = summary.group
            entry.update(
                name=group.name,
                avatar=group.avatar,
                member_count=len(group.members),
                members=list(group.members),
                creator_id=group.creator_id,
            )
            return entry
        counterpart_id = summary.counterpart_id
        entry["counterpart_id"] = counterpart_id
        if self.users is None:
            entry.update(name=counterpart_id, avatar=None)
            return entry
        profile = self.users.profile(counterpart_id)
        if profile is None:
            # Counterpart account was removed; the conversation is kept but not listed.
            return None
        entry.update(name=profile["username"], avatar=profile["avatar"])
        return entry

    # messages

    def send_message(self, sender_id: str, conv_id: str, payload: dict[str, Any]) -> Message | None:
        conv_id = _require_str(conv_id, "conv_id")
        body = MessageBody.from_payload(payload)
        sender_name = sender_avatar = None
        if self.users is not None:
            sender = self.users.get(sender_id)
            if sender is None:
                logger.debug("dropping message from unknown sender %s", sender_id)
                return None
            if not is_group_id(conv_id):
                first, second = parse_direct_conv_id(conv_id)
                counterpart = second if first == sender_id else first
                if self.users.get(counterpart) is None:
                    logger.debug("dropping message to unknown user %s", counterpart)
                    return None
            sender_name, sender_avatar = sender.username, sender.avatar
        message = self.store.append_message(
            conv_id, sender_id, body, sender_name=sender_name, sender_avatar=sender_avatar
        )
        if message is None:
            return None
        self.deliver(self.recipients(conv_id), make_frame("new_message", {"message": message.to_dict()}))
        return message

    def edit_message(self, user_id: str, conv_id: str, msg_id: str, text: Any) -> Message | None:
        if not isinstance(text, str):
            raise InvalidRequest("text required")
        message = self.store.edit_message(_require_str(conv_id, "conv_id"), _require_str(msg_id, "msg_id"), user_id, text)
        if message is None:
            return None
        frame = make_frame(
            "message_edited",
            {"conv_id": conv_id, "msg_id": msg_id, "text": message.text, "edited_at_ms": message.edited_at_ms},
        )
        self.deliver(self.recipients(conv_id), frame)
        return message

    def delete_message(self, user_id: str, conv_id: str, msg_id: str) -> bool:
        removed = self.store.delete_message(_require_str(conv_id, "conv_id"), _require_str(msg_id, "msg_id"), user_id)
        if removed is None:
            return False
        self.deliver(self.recipients(conv_id), make_frame("message_deleted", {"conv_id": conv_id, "msg_id": msg_id}))
        return True

    def add_reaction(self, user_id: str, conv_id: str, msg_id: str, emoji: Any) -> Message | None:
        emoji = _require_str(emoji, "emoji")
        message = self.store.add_reaction(_require_str(conv_id, "conv_id"), _require_str(msg_id, "msg_id"), user_id, emoji)
        if message is None:
            return None
        frame = make_frame(
            "reaction_updated", {"conv_id": conv_id, "msg_id": msg_id, "reactions": message.reactions_dict()}
        )
        self.deliver(self.recipients(conv_id), frame)
        return message

    def clear_history(self, user_id: str, conv_id: str) -> bool:
        conv_id = _require_str(conv_id, "conv_id")
        if not self.store.clear_history(conv_id, user_id):
            return False
        self.deliver(self.store.participants(conv_id), make_frame("history_cleared", {"conv_id": conv_id}))
        return True

    def delete_conversation(self, user_id: str, conv_id: str) -> bool:
        conv_id = _require_str(conv_id, "conv_id")
        if not self.store.delete_conversation(conv_id, user_id):
            return False
        self.deliver(self.store.participants(conv_id), make_frame("conversation_deleted", {"conv_id": conv_id}))
        return True

    # groups

    def create_group(self, creator_id: str, name: Any, member_ids: Any, avatar: Any = None) -> Group:
        if not isinstance(member_ids, list):
            raise InvalidRequest("members must be a list of user ids")
        if avatar is not None and not isinstance(avatar, str):
            raise InvalidRequest("avatar must be a string")
        group = self.store.create_group(name, member_ids, creator_id, avatar)
        self.deliver(group.members, make_frame("group_created", {"group": group.to_dict()}))
        return group

    def update_group(self, user_id: str, group_id: str, *, name: Any = None, avatar: Any = None) -> Group | None:
        if name is not None and not isinstance(name, str):
            raise InvalidRequest("name must be a string")
        if avatar is not None and not isinstance(avatar, str):
            raise InvalidRequest("avatar must be a string")
        group = self.store.update_group(_require_str(group_id, "group_id"), user_id, name=name, avatar=avatar)
        if group is None:
            return None
        self._group_updated(group, group.members)
        return group

    def add_members(self, user_id: str, group_id: str, member_ids: Any) -> List[str] | None:
        if not isinstance(member_ids, list):
            raise InvalidRequest("members must be a list of user ids")
        added = self.store.add_members(_require_str(group_id, "group_id"), user_id, member_ids)
        if added is None:
            return None
        group = self.store.group(group_id)
        self._group_updated(group, group.members)
        return added

    def remove_member(self, user_id: str, group_id: str, member_id: str) -> bool:
        group_id = _require_str(group_id, "group_id")
        if not self.store.remove_member(group_id, user_id, _require_str(member_id, "member_id")):
            return False
        self.send_to(member_id, make_frame("removed_from_group", {"group_id": group_id}))
        group = self.store.group(group_id)
        self._group_updated(group, group.members)
        return True

    def leave_group(self, user_id: str, group_id: str) -> str | None:
        group_id = _require_str(group_id, "group_id")
        group = self.store.group(group_id)
        if group is None:
            return None
        members_before = list(group.members)
        outcome = self.store.leave_group(group_id, user_id)
        if outcome == "deleted":
            self._conversation_removed(group_id, members_before)
            self.deliver(members_before, make_frame("group_deleted", {"group_id": group_id}))
        elif outcome == "left":
            self._group_updated(group, members_before)
        return outcome

    def rename_group(self, user_id: str, group_id: str, name: Any) -> bool:
        group_id = _require_str(group_id, "group_id")
        if not self.store.rename_group(group_id, user_id, name):
            return False
        group = self.store.group(group_id)
        self.deliver(group.members, make_frame("group_renamed", {"group_id": group_id, "name": group.name}))
        return True

    def delete_group(self, user_id: str, group_id: str) -> bool:
        group = self.store.delete_group(_require_str(group_id, "group_id"), user_id)
        if group is None:
            return False
        self._conversation_removed(group_id, list(group.members))
        self.deliver(group.members, make_frame("group_deleted", {"group_id": group_id}))
        return True

    def _group_updated(self, group: Group, audience: Iterable[str]) -> None:
        self.deliver(audience, make_frame("group_updated", group.to_dict()))

    # moderation

    def block(self, user_id: str, target_id: Any) -> bool:
        target_id = _require_str(target_id, "blocked_user_id")
        if target_id == user_id:
            raise InvalidRequest("cannot block yourself")
        return self.blocks.block(user_id, target_id)

    def unblock(self, user_id: str, target_id: Any) -> bool:
        return self.blocks.unblock(user_id, _require_str(target_id, "blocked_user_id"))
