"""
odata_core.tracking.tracker - Change tracking for delta responses
=================================================================

Keeps an ordered, versioned history of changes per entity set and issues
opaque delta tokens pointing into it.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from odata_core.core.errors import ValidationError


logger = logging.getLogger("odata_core.tracking")


class ChangeType(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class ChangeEvent:
    """One recorded change. ``key_values`` and ``data`` use wire names."""

    entity_set: str
    type: ChangeType
    key_values: Dict[str, Any]
    data: Optional[Dict[str, Any]] = None
    version: int = 0


@dataclass
class _History:
    version: int = 0
    events: List[ChangeEvent] = field(default_factory=list)


def _encode_token(entity_set: str, version: int) -> str:
    raw = json.dumps({"entitySet": entity_set, "version": version}, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def _decode_token(token: str) -> Tuple[str, int]:
    if not token:
        raise ValidationError("empty delta token", code="Invalid $deltatoken")
    try:
        padded = token + "=" * (-len(token) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise ValidationError(f"invalid delta token encoding: {e}", code="Invalid $deltatoken") from e
    if not isinstance(payload, dict) or not payload.get("entitySet"):
        raise ValidationError("delta token missing entity set", code="Invalid $deltatoken")
    version = payload.get("version", 0)
    if not isinstance(version, int) or isinstance(version, bool) or version < 0:
        raise ValidationError("delta token has an invalid version", code="Invalid $deltatoken")
    return payload["entitySet"], version


class ChangeTracker:
    """
    In-process change history.

    Examples
    --------
    >>> tracker = ChangeTracker()
    >>> tracker.register("Orders")
    >>> token = tracker.current_token("Orders")
    >>> tracker.record_change("Orders", {"ID": 1}, {"ID": 1, "Total": 9}, ChangeType.ADDED)
    1
    >>> events, next_token = tracker.changes_since(token)
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entities: Dict[str, _History] = {}

    def register(self, entity_set: str) -> None:
        """Start keeping history for an entity set (idempotent)."""
        with self._lock:
            self._entities.setdefault(entity_set, _History())

    def is_registered(self, entity_set: str) -> bool:
        with self._lock:
            return entity_set in self._entities

    def record_change(
        self,
        entity_set: str,
        key_values: Mapping[str, Any],
        data: Optional[Mapping[str, Any]],
        change_type: ChangeType,
    ) -> int:
        """Append an event and return the entity set's new version."""
        with self._lock:
            history = self._entities.setdefault(entity_set, _History())
            history.version += 1
            history.events.append(
                ChangeEvent(
                    entity_set=entity_set,
                    type=ChangeType(change_type),
                    key_values=dict(key_values),
                    data=dict(data) if data is not None else None,
                    version=history.version,
                )
            )
            logger.debug(f"recorded {ChangeType(change_type).value} on {entity_set} v{history.version}")
            return history.version

    def current_token(self, entity_set: str) -> str:
        """
        Token for "now".

        Raises
        ------
        ValidationError
            When the entity set is not tracked
        """
        with self._lock:
            history = self._entities.get(entity_set)
            if history is None:
                raise ValidationError(f"entity set '{entity_set}' is not registered for change tracking")
            return _encode_token(entity_set, history.version)

    def changes_since(self, token: str) -> Tuple[List[ChangeEvent], str]:
        """Events after ``token`` plus the token to use next time."""
        entity_set, version = _decode_token(token)
        with self._lock:
            history = self._entities.get(entity_set)
            if history is None:
                raise ValidationError(f"entity set '{entity_set}' is not registered for change tracking")
            if version > history.version:
                raise ValidationError("delta token is ahead of the change history", code="Invalid $deltatoken")
            events = [
                ChangeEvent(
                    e.entity_set,
                    e.type,
                    dict(e.key_values),
                    dict(e.data) if e.data is not None else None,
                    e.version,
                )
                for e in history.events
                if e.version > version
            ]
            return events, _encode_token(entity_set, history.version)

    def entity_set_from_token(self, token: str) -> str:
        return _decode_token(token)[0]
