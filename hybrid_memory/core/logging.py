from __future__ import annotations

import logging
from typing import Any

from hybrid_memory.core.security import mask_credentials

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _mask_arg(value: Any) -> Any:
    # Non-string args keep their type so %d and %.2f placeholders still format.
    return mask_credentials(value) if isinstance(value, str) else value


class CredentialMaskingFilter(logging.Filter):
    """Masks embedding credentials in engine log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = mask_credentials(str(record.msg))
        if isinstance(record.args, dict):
            record.args = {key: _mask_arg(value) for key, value in record.args.items()}
        elif record.args:
            record.args = tuple(_mask_arg(arg) for arg in record.args)
        return True


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    root = logging.getLogger()
    # Logger filters skip records propagated from child loggers; handler filters do not.
    for target in [root, *root.handlers]:
        if not any(isinstance(item, CredentialMaskingFilter) for item in target.filters):
            target.addFilter(CredentialMaskingFilter())
