from __future__ import annotations

from typing import Dict, List


class BlockList:
    """Directed block relations: ``block(a, b)`` only changes what ``a`` sees."""

    def __init__(self) -> None:
        # Insertion-ordered so listings are stable.
        self._blocked: Dict[str, Dict[str, None]] = {}

    def block(self, user_id: str, target_id: str) -> bool:
        """Add ``target_id`` to ``user_id``'s list; return False if already present."""

        targets = self._blocked.setdefault(user_id, {})
        if target_id in targets:
            return False
        targets[target_id] = None
        return True

    def unblock(self, user_id: str, target_id: str) -> bool:
        targets = self._blocked.get(user_id)
        if not targets or target_id not in targets:
            return False
        targets.pop(target_id)
        if not targets:
            self._blocked.pop(user_id, None)
        return True

    def is_blocked(self, user_id: str, target_id: str) -> bool:
        return target_id in self._blocked.get(user_id, {})

    def blocked_by(self, user_id: str) -> List[str]:
        return list(self._blocked.get(user_id, {}))
