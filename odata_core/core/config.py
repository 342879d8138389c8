"""
odata_core.core.config - Service configuration
==============================================

Process-wide settings for the execution core. Built once at startup, passed
explicitly to every controller.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


NULL_FK_POLICIES = ("error", "zero")


@dataclass(frozen=True)
class ServiceConfig:
    """
    Execution core configuration.

    Parameters
    ----------
    service_root : str
        Absolute service root used for Location, next and delta links,
        e.g. "http://localhost:5050/odata/"
    max_page_size : int, optional
        Server-driven page size. Collection reads without ``$top`` (or with a
        larger one) are capped to this and paged through next-links.
    null_fk_policy : str
        What to do when a null principal value is copied onto a non-nullable
        dependent property: "error" (reject) or "zero" (use the type's zero value)
    track_changes : bool
        Enable change tracking / delta links for entity sets that opt in
    weak_etags : bool
        Emit weak (W/"...") ETags
    strict_payloads : bool
        Reject unknown property names in create/update payloads

    Examples
    --------
    >>> cfg = ServiceConfig(service_root="http://localhost:5050/odata/", max_page_size=100)
    """

    service_root: str = "http://localhost/odata/"
    max_page_size: Optional[int] = None
    null_fk_policy: str = "error"
    track_changes: bool = True
    weak_etags: bool = True
    strict_payloads: bool = True

    def __post_init__(self) -> None:
        if self.null_fk_policy not in NULL_FK_POLICIES:
            raise ValueError(
                f"null_fk_policy must be one of {NULL_FK_POLICIES}, got {self.null_fk_policy!r}"
            )
        if self.max_page_size is not None and int(self.max_page_size) <= 0:
            raise ValueError("max_page_size must be a positive integer")
        object.__setattr__(self, "service_root", self.service_root.rstrip("/") + "/")

    @classmethod
    def from_env(cls, prefix: str = "ODATA_") -> "ServiceConfig":
        """
        Build a configuration from environment variables.

        Reads ``ODATA_SERVICE_ROOT``, ``ODATA_MAX_PAGE_SIZE``,
        ``ODATA_NULL_FK_POLICY``, ``ODATA_TRACK_CHANGES``, ``ODATA_WEAK_ETAGS``
        and ``ODATA_STRICT_PAYLOADS``.
        """
        env = os.environ
        page = env.get(f"{prefix}MAX_PAGE_SIZE", "").strip()
        return cls(
            service_root=env.get(f"{prefix}SERVICE_ROOT", cls.service_root),
            max_page_size=int(page) if page else None,
            null_fk_policy=env.get(f"{prefix}NULL_FK_POLICY", "error").strip().lower(),
            track_changes=_flag(env.get(f"{prefix}TRACK_CHANGES"), True),
            weak_etags=_flag(env.get(f"{prefix}WEAK_ETAGS"), True),
            strict_payloads=_flag(env.get(f"{prefix}STRICT_PAYLOADS"), True),
        )


def _flag(raw: Optional[str], default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")
