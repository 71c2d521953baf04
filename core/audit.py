import logging
import json
from datetime import datetime, timezone
import hashlib
from typing import Optional

from core.logging import LOG_DIR

# --- Audit Logger Setup ---
# Dedicated logger for audit trails, routed to its own file.
audit_logger = logging.getLogger("audit")
audit_logger.setLevel(logging.INFO)
audit_logger.propagate = False # Prevent audit logs from going to the main app logger

if not audit_logger.handlers:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(LOG_DIR / "audit.log", encoding='utf-8')
    formatter = logging.Formatter('%(asctime)s - %(message)s')
    handler.setFormatter(formatter)
    audit_logger.addHandler(handler)

def fingerprint(secret: str) -> str:
    """Short SHA256 fingerprint of a secret, safe to log."""
    if not secret:
        return ""
    return hashlib.sha256(secret.encode('utf-8')).hexdigest()[:12]

def _write(event_type: str, **fields):
    try:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            **fields,
        }
        audit_logger.info(json.dumps(log_entry))
    except Exception as e:
        # Audit logging failures must not crash a generation.
        logging.getLogger("prdgen").error(f"Failed to write audit log: {e}", exc_info=True)

def audit_credential_selection(
    user_id: Optional[str],
    provider: str,
    scope: str,
    api_key: str,
):
    """
    Logs which credential was picked for a request.

    Args:
        user_id: The caller, or None for anonymous CLI use.
        provider: Provider name of the chosen credential.
        scope: "user", "global" or "environment".
        api_key: The key itself. Only its fingerprint is written.
    """
    _write(
        "credential_selected",
        user_id=user_id,
        provider=provider,
        scope=scope,
        key_fingerprint=fingerprint(api_key),
    )

def audit_prd_change(user_id: str, prd_id: str, action: str, status: str, message: str = ""):
    """Logs creation or deletion of a PRD record ("CREATED", "DELETED", "DENIED")."""
    _write(
        "prd_change",
        user_id=user_id,
        prd_id=prd_id,
        action=action,
        status=status,
        message=message,
    )
