"""Runtime settings for SignFlow.

Settings are a plain pydantic model so they can be built in code (tests,
embedding) or from ``SIGNFLOW_*`` environment variables via
``Settings.from_env()``.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

DEFAULT_DATA_DIR = Path.home() / ".signflow"

_ENV_PREFIX = "SIGNFLOW_"


class RefinalizePolicy(str, Enum):
    """What finalize does for a document that already has an artifact."""

    REJECT = "reject"
    REGENERATE = "regenerate"


class Settings(BaseModel):
    """SignFlow configuration.

    Attributes:
        data_dir: Root directory of the filesystem store.
        frontend_url: Base URL used to build signing links in notifications.
        refinalize: Policy for finalizing an already finalized document.
        auto_finalize: Finalize automatically when a signing request completes.
        default_field_width: Width used when a field is created without one.
        default_field_height: Height used when a field is created without one.
        smtp_host: SMTP server; when unset notifications are only logged.
        smtp_port: SMTP port.
        smtp_user: SMTP login.
        smtp_password: SMTP password.
        smtp_sender: From address for outgoing mail.
        smtp_use_tls: Issue STARTTLS after connecting.
    """

    data_dir: Path = Field(default_factory=lambda: DEFAULT_DATA_DIR)
    frontend_url: str = "http://localhost:5173"
    refinalize: RefinalizePolicy = RefinalizePolicy.REJECT
    auto_finalize: bool = True
    default_field_width: float = 150.0
    default_field_height: float = 50.0
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: str = "signflow@localhost"
    smtp_use_tls: bool = True

    @classmethod
    def from_env(cls, **overrides: Any) -> "Settings":
        """Build settings from ``SIGNFLOW_<FIELD>`` variables.

        Explicit ``overrides`` win over the environment; unset values fall
        back to the model defaults.
        """
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.environ.get(_ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
