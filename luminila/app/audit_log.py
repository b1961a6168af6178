import json
from typing import Any, Optional


def write_audit(
    cur,
    company_id: str,
    user_id: Optional[str],
    action: str,
    entity_type: str,
    entity_id: Optional[str],
    details: Optional[dict[str, Any]] = None,
) -> None:
    cur.execute(
        """
        INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s::jsonb)
        """,
        (company_id, user_id, action, entity_type, entity_id, json.dumps(details or {}, default=str)),
    )
