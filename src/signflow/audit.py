"""Fire-and-forget audit trail.

Auditing is a side effect, never part of an operation's correctness: a
failed write is logged and the calling operation carries on.
"""

import logging
from typing import Any, Optional

from .models import AuditAction, AuditEntry
from .store import DocumentStore

logger = logging.getLogger("signflow.audit")


class AuditTrail:
    """Records audit entries into the store's append-only JSONL logs.

    Args:
        store: Store holding the audit logs.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def record(
        self,
        action: AuditAction,
        document_id: Optional[str] = None,
        user_id: Optional[str] = None,
        signing_request_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        """Append one entry.

        Returns:
            The recorded entry, or None if it could not be written.
        """
        try:
            entry = AuditEntry(
                action=action,
                document_id=document_id,
                user_id=user_id,
                signing_request_id=signing_request_id,
                details=details or {},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self._store.append_audit(entry)
        except (OSError, ValueError) as exc:
            logger.warning("Audit write failed for %s: %s", action.value, exc)
            return None
        return entry

    def trail(self, document_id: Optional[str] = None) -> list[AuditEntry]:
        return self._store.get_audit_trail(document_id)
