"""Email-to-identity resolution.

Owners and external signers are both identified by email. External
signers have no account, so the first time an unknown email is resolved
an ephemeral identity is created and reused from then on.
"""

import logging
import re
from typing import Optional

from .errors import ValidationError
from .models import Identity
from .store import DocumentStore

logger = logging.getLogger("signflow.identity")

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    """Lower-case and trim an email, validating its shape.

    Raises:
        ValidationError: If the value does not look like an email address.
    """
    cleaned = (email or "").strip().lower()
    if not EMAIL_RE.match(cleaned):
        raise ValidationError(f"Invalid email address: {email!r}")
    return cleaned


class IdentityDirectory:
    """Resolves emails to durable identities, creating ephemeral ones.

    Args:
        store: Store holding identities.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def resolve(self, email: str, name: Optional[str] = None) -> Identity:
        """Return the identity for ``email``, creating an ephemeral one if needed."""
        normalized = normalize_email(email)
        with self._store.lock(f"identity:{normalized}"):
            existing = self._store.find_identity_by_email(normalized)
            if existing is not None:
                return existing
            identity = Identity(
                email=normalized,
                name=name or normalized.split("@", 1)[0],
                ephemeral=True,
            )
            self._store.save_identity(identity)
        logger.info("Created ephemeral identity %s for %s", identity.user_id[:8], normalized)
        return identity

    def register(self, email: str, name: str = "") -> Identity:
        """Register a non-ephemeral identity, promoting an ephemeral one."""
        identity = self.resolve(email, name)
        if identity.ephemeral or (name and identity.name != name):
            identity.ephemeral = False
            identity.name = name or identity.name
            self._store.save_identity(identity)
        return identity

    def get(self, user_id: str) -> Optional[Identity]:
        try:
            return self._store.load_identity(user_id)
        except FileNotFoundError:
            return None
