"""Result dict builders shared by the node handlers."""

import time
from datetime import datetime
from typing import Any, Dict, Optional

from crm_automation.services.execution.models import Suspension


def node_success(node_id: str, node_type: str, start_time: float,
                 result: Optional[Dict[str, Any]] = None,
                 suspension: Optional[Suspension] = None) -> Dict[str, Any]:
    payload = {
        "success": True,
        "node_id": node_id,
        "node_type": node_type,
        "result": result or {},
        "execution_time": time.time() - start_time,
        "timestamp": datetime.now().isoformat(),
    }
    if suspension is not None:
        payload["suspension"] = suspension
    return payload


def node_failure(node_id: str, node_type: str, start_time: float, error: str) -> Dict[str, Any]:
    return {
        "success": False,
        "node_id": node_id,
        "node_type": node_type,
        "error": error,
        "execution_time": time.time() - start_time,
        "timestamp": datetime.now().isoformat(),
    }


def first_present(*values: Any) -> Any:
    """First value that is neither None nor an empty string."""
    for value in values:
        if value is not None and value != '':
            return value
    return None
