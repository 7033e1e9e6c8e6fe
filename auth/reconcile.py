"""
auth/reconcile.py -- Sync a verified directory profile into the local store.

Every successful directory login goes through reconcile(). The directory is
authoritative for names and role: the role is recomputed from the current
admin-group membership on each login, so removing someone from the admin
group demotes them on their next directory login with no local action.
The local credential hash is never read or written here.

Lookup-then-create is not atomic. Two concurrent first logins for the same
user can both miss the lookup and both try to insert; the UNIQUE(email)
constraint rejects the loser with IdentityConflict, and the loser retries
once as a re-fetch + update. A second conflict means something other than
that race is going on, and it is fatal (ReconciliationFailed).

When the email and the uid match two different rows (the directory moved the
user onto an address that already has a local row), the email row wins and
takes over the uid; the store clears the old link in the same transaction.

Layer rule: no imports from api/, audit/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from auth.errors import IdentityConflict, ReconciliationFailed
from auth.models import DirectoryProfile, Identity, Role
from auth.store import IdentityStore

logger = logging.getLogger("recruitauth.reconcile")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def role_for(is_admin_group_member: bool) -> Role:
    return Role.administrator if is_admin_group_member else Role.standard


class Reconciler:
    def __init__(self, store: IdentityStore, clock: Callable[[], datetime] = _utcnow) -> None:
        self.store = store
        self._clock = clock

    def reconcile(self, profile: DirectoryProfile, is_admin_group_member: bool) -> Identity:
        """Find-or-create the identity for profile and sync its mutable fields."""
        synced_at = self._clock().isoformat()
        role = role_for(is_admin_group_member)

        existing = self.store.find_by_email_or_directory_id(profile.email, profile.directory_id)
        if existing is None:
            try:
                identity = self.store.create(
                    Identity(
                        email=profile.email,
                        directory_id=profile.directory_id,
                        role=role,
                        first_name=profile.given_name or "Unknown",
                        last_name=profile.surname or "User",
                        last_directory_sync_at=synced_at,
                    )
                )
                logger.info(
                    "Created identity %s for directory user %s (role=%s)",
                    identity.id,
                    profile.directory_id,
                    role.value,
                )
                return identity
            except IdentityConflict:
                logger.info("Concurrent create for %s; retrying as update", profile.directory_id)
                existing = self.store.find_by_email_or_directory_id(profile.email, profile.directory_id)
                if existing is None:
                    raise ReconciliationFailed() from None
                return self._update(existing, profile, role, synced_at, final=True)

        return self._update(existing, profile, role, synced_at, final=False)

    def _update(
        self,
        existing: Identity,
        profile: DirectoryProfile,
        role: Role,
        synced_at: str,
        *,
        final: bool,
    ) -> Identity:
        if existing.role != role:
            logger.info(
                "Role of identity %s changed %s -> %s from directory groups",
                existing.id,
                Role(existing.role).value,
                role.value,
            )
        if existing.directory_id != profile.directory_id:
            # Any other row still holding this uid is unlinked by the store.
            logger.info("Linking directory user %s to identity %s", profile.directory_id, existing.id)
        try:
            return self.store.update_profile_fields(
                existing.id,
                first_name=profile.given_name or existing.first_name,
                last_name=profile.surname or existing.last_name,
                role=role,
                last_directory_sync_at=synced_at,
                directory_id=profile.directory_id,
            )
        except IdentityConflict:
            if final:
                logger.error("Second conflict reconciling identity %s; giving up", existing.id)
                raise ReconciliationFailed() from None
            # A concurrent reconcile linked the uid between our two statements.
            # Retry exactly once from a fresh lookup.
            refreshed = self.store.find_by_email_or_directory_id(profile.email, profile.directory_id)
            if refreshed is None:
                raise ReconciliationFailed() from None
            return self._update(refreshed, profile, role, synced_at, final=True)
        except LookupError:
            logger.error("Identity %s vanished during reconciliation", existing.id)
            raise ReconciliationFailed() from None
