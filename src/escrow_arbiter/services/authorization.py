"""Default authorization policy.

A filer must be the job's requester (when filing as requester) or its
assigned provider (when filing as provider). Resolving is reserved for the
administrators listed in ADMIN_USER_IDS.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from escrow_arbiter.config import get_settings
from escrow_arbiter.domain.enums import FilerRole

if TYPE_CHECKING:
    from collections.abc import Iterable


class JobPartyAuthorizationGate:
    """Allows job parties to file and allow-listed admins to resolve."""

    def __init__(self, admin_user_ids: Iterable[str] | None = None) -> None:
        if admin_user_ids is None:
            admin_user_ids = get_settings().admin_user_id_list
        self._admins = frozenset(str(u) for u in admin_user_ids)

    def can_act_on_job(self, user_id: str, job: object, role: FilerRole) -> bool:
        if role is FilerRole.REQUESTER:
            party = getattr(job, "requester_id", None)
        else:
            party = getattr(job, "provider_id", None)
        return party is not None and str(party) == str(user_id)

    def can_resolve_disputes(self, user_id: str) -> bool:
        return str(user_id) in self._admins
