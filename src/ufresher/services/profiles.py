"""Profile lookup, lazy creation and the administrative gate."""

from __future__ import annotations

import hmac
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ufresher.core.errors import AdminCodeError
from ufresher.models.user import ROLE_ADMIN, ROLE_JUNIOR, Profile
from ufresher.services.identity import ProviderIdentity

logger = logging.getLogger(__name__)


def display_name(identity: ProviderIdentity) -> str:
    """Pick a display name: provider metadata, then the email local part."""
    if identity.name:
        return identity.name
    local_part = identity.email.split("@", 1)[0]
    return local_part or "User"


class ProfileDirectory:
    """Read and lazily create profile rows keyed by provider subject id."""

    def __init__(self, admin_code: str | None = None) -> None:
        self._admin_code = admin_code

    def check_admin_code(self, supplied: str) -> None:
        """Raise :class:`AdminCodeError` unless ``supplied`` matches the configured code."""
        if not self._admin_code or not hmac.compare_digest(
            supplied.encode("utf-8"),
            self._admin_code.encode("utf-8"),
        ):
            raise AdminCodeError("Invalid admin code")

    def fetch(self, db: Session, subject_id: str) -> Profile | None:
        return db.get(Profile, subject_id)

    def ensure(
        self,
        db: Session,
        identity: ProviderIdentity,
        *,
        admin_code: str | None = None,
    ) -> Profile:
        """Return the profile for ``identity``, creating it on first use.

        When ``admin_code`` is supplied it must match, otherwise the whole
        call fails with :class:`AdminCodeError` and nothing is written. A
        matching code elevates the profile to the admin role.
        """
        if admin_code is not None:
            self.check_admin_code(admin_code)
        role = ROLE_ADMIN if admin_code is not None else ROLE_JUNIOR

        profile = db.get(Profile, identity.subject_id)
        if profile is None:
            profile = Profile(
                id=identity.subject_id,
                name=display_name(identity),
                email=identity.email,
                role=role,
            )
            db.add(profile)
            try:
                db.commit()
            except IntegrityError:
                # A concurrent session created the row first.
                db.rollback()
                profile = db.get(Profile, identity.subject_id)
                if profile is None:
                    raise
            else:
                logger.info("Created profile for subject %s", identity.subject_id)
                return profile

        if role == ROLE_ADMIN and profile.role != ROLE_ADMIN:
            profile.role = ROLE_ADMIN
            db.commit()
            logger.info("Elevated subject %s to admin", identity.subject_id)
        return profile
