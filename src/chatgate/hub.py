from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Dict

Frame = Dict[str, Any]
Callback = Callable[[Frame], None]

_connection_ids = itertools.count(1)


@dataclass(eq=False)
class Connection:
    """A live socket bound to one user identity.

    Connections compare by identity, so a reconnect of the same user always
    produces a distinct reference.
    """

    user_id: str
    callback: Callback
    connection_id: int = field(default_factory=lambda: next(_connection_ids))

    def deliver(self, frame: Frame) -> None:
        self.callback(frame)


def make_frame(frame_type: str, body: Frame, *, request_id: str | None = None) -> Frame:
    frame: Frame = {"v": 1, "t": frame_type, "body": body}
    if request_id is not None:
        frame["id"] = request_id
    return frame


def error_frame(code: str, message: str, *, request_id: str | None = None) -> Frame:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}
