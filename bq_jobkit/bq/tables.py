from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List

from ..errors import PartialFailureError
from .client import Transport

logger = logging.getLogger(__name__)


def table_path(project: str, dataset_id: str, table_id: str) -> str:
    return f"/projects/{project}/datasets/{dataset_id}/tables/{table_id}"


def insert_rows(
    transport: Transport,
    project: str,
    dataset_id: str,
    table_id: str,
    rows: List[Dict[str, Any]],
    skip_invalid_rows: bool = False,
    ignore_unknown_values: bool = False,
    raw: bool = False,
) -> Dict[str, Any]:
    """Stream rows into a table with ``tabledata.insertAll``.

    With ``raw`` each row is already in ``{"insertId": ..., "json": ...}``
    form. Rejected rows raise ``PartialFailureError`` with one entry per
    failed row, in input order.
    """
    if not rows:
        raise ValueError("You must provide at least 1 row to be inserted.")
    payload_rows = rows if raw else [{"insertId": str(uuid.uuid4()), "json": row} for row in rows]
    body = {
        "rows": payload_rows,
        "skipInvalidRows": skip_invalid_rows,
        "ignoreUnknownValues": ignore_unknown_values,
    }
    response = transport.request(
        "POST",
        f"{table_path(project, dataset_id, table_id)}/insertAll",
        data=body,
    )
    insert_errors = response.get("insertErrors") or []
    if insert_errors:
        failures = [
            {
                "row": rows[int(entry.get("index", 0))],
                "errors": entry.get("errors") or [],
            }
            for entry in sorted(insert_errors, key=lambda entry: int(entry.get("index", 0)))
        ]
        logger.warning("insertAll into %s.%s rejected %s of %s rows", dataset_id, table_id, len(failures), len(rows))
        raise PartialFailureError(failures, response=response)
    return response
