from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set

from .conversations import InvalidRequest, is_group_id
from .hub import make_frame
from .routing import Router
from .sessions import _now_ms

logger = logging.getLogger(__name__)

CALL_TYPES = ("audio", "video")


class CallInProgress(Exception):
    pass


def _require_conv_id(conv_id: Any) -> str:
    if not isinstance(conv_id, str) or not conv_id:
        raise InvalidRequest("conv_id required")
    return conv_id


@dataclass
class Call:
    """Server-side record of one call, kept only while it rings or runs.

    The relay never interprets negotiation payloads; the record exists so
    answers can be routed unambiguously and abandoned calls can be ended.
    """

    call_id: str
    conv_id: str
    caller_id: str
    call_type: str
    started_at_ms: int
    state: str = "ringing"
    participants: Set[str] = field(default_factory=set)
    answered_at_ms: int | None = None

    @property
    def is_group(self) -> bool:
        return is_group_id(self.conv_id)


class CallRelay:
    def __init__(
        self,
        router: Router,
        *,
        ring_timeout_s: float = 45.0,
        sweep_interval_s: float = 1.0,
        now_func=_now_ms,
    ) -> None:
        self.router = router
        self.ring_timeout_ms = int(ring_timeout_s * 1000)
        self.sweep_interval_s = sweep_interval_s
        self._now = now_func
        self._calls: Dict[str, Call] = {}
        self._sweeper_task: asyncio.Task | None = None
        router.on_conversation_removed(self.conversation_removed)

    def start_sweeper(self) -> None:
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self._sweep())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    async def _sweep(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sweep_interval_s)
                self.expire()
        except asyncio.CancelledError:
            return

    def active_call(self, conv_id: str) -> Call | None:
        return self._calls.get(conv_id)

    def start_call(self, conv_id: str, caller_id: str, call_type: Any = "audio") -> Call | None:
        _require_conv_id(conv_id)
        if call_type not in CALL_TYPES:
            raise InvalidRequest("call_type must be audio or video")
        if not self.router.store.can_view(conv_id, caller_id):
            logger.debug("%s cannot call in %s", caller_id, conv_id)
            return None
        if conv_id in self._calls:
            raise CallInProgress("a call is already in progress for this conversation")
        call = Call(
            call_id=f"call_{secrets.token_hex(6)}",
            conv_id=conv_id,
            caller_id=caller_id,
            call_type=call_type,
            started_at_ms=self._now(),
            participants={caller_id},
        )
        self._calls[conv_id] = call
        frame = make_frame(
            "incoming_call",
            {"conv_id": conv_id, "call_id": call.call_id, "caller_id": caller_id, "call_type": call_type},
        )
        delivered = self.router.deliver(self._callees(call), frame)
        if delivered == 0:
            logger.debug("call %s in %s reached nobody", call.call_id, conv_id)
        return call

    def answer_call(self, conv_id: str, answerer_id: str) -> Call | None:
        call = self._calls.get(_require_conv_id(conv_id))
        if call is None or answerer_id == call.caller_id or answerer_id not in self._callees(call):
            return None
        call.participants.add(answerer_id)
        if call.state == "ringing":
            call.state = "active"
            call.answered_at_ms = self._now()
        frame = make_frame("call_answered", {"conv_id": conv_id, "call_id": call.call_id, "answerer_id": answerer_id})
        if call.is_group:
            audience = [m for m in self.router.recipients(conv_id) if m != answerer_id]
        else:
            audience = [call.caller_id]
        self.router.deliver(audience, frame)
        return call

    def end_call(self, conv_id: str, user_id: str) -> Call | None:
        call = self._calls.get(_require_conv_id(conv_id))
        if call is None or not self.router.store.can_view(conv_id, user_id):
            return None
        return self._end(call, "hangup")

    def relay_signal(self, to_user_id: Any, payload: Any, from_user_id: str, *, conv_id: Any = None) -> bool:
        if not isinstance(to_user_id, str) or not to_user_id:
            raise InvalidRequest("to required")
        if payload is None:
            raise InvalidRequest("signal required")
        body: dict[str, Any] = {"from": from_user_id, "signal": payload}
        if conv_id is not None:
            body["conv_id"] = conv_id
        return self.router.send_to(to_user_id, make_frame("signal", body))

    def drop_user(self, user_id: str) -> List[Call]:
        """End every call ``user_id`` placed or joined; used when they disconnect."""

        ended = []
        for call in list(self._calls.values()):
            if user_id == call.caller_id or user_id in call.participants:
                ended.append(self._end(call, "disconnected", exclude=user_id))
        return ended

    def conversation_removed(self, conv_id: str, members: List[str]) -> Call | None:
        """End the call of a conversation that no longer exists, notifying ``members``."""

        call = self._calls.get(conv_id)
        if call is None:
            return None
        return self._end(call, "group_deleted", audience=members)

    def expire(self) -> List[Call]:
        now_ms = self._now()
        expired = [
            call
            for call in list(self._calls.values())
            if call.state == "ringing" and now_ms - call.started_at_ms >= self.ring_timeout_ms
        ]
        for call in expired:
            self._end(call, "timeout")
        return expired

    def _callees(self, call: Call) -> List[str]:
        return [user_id for user_id in self.router.recipients(call.conv_id) if user_id != call.caller_id]

    def _end(
        self, call: Call, reason: str, *, exclude: str | None = None, audience: List[str] | None = None
    ) -> Call:
        self._calls.pop(call.conv_id, None)
        if audience is None:
            audience = [*self._callees(call), call.caller_id]
        if exclude is not None:
            audience = [user_id for user_id in audience if user_id != exclude]
        frame = make_frame("call_ended", {"conv_id": call.conv_id, "call_id": call.call_id, "reason": reason})
        self.router.deliver(audience, frame)
        logger.debug("call %s in %s ended: %s", call.call_id, call.conv_id, reason)
        return call
