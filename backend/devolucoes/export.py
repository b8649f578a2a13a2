"""
Return export: pandas frames for CSV download.

Column headers are the ones sellers already use in their spreadsheets.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

import pandas as pd

from devolucoes.extraction import extract_cancel_reason, extract_detailed_reason, record_value
from devolucoes.metrics import MetricsSnapshot

EXPORT_COLUMNS = [
    "Order ID",
    "Claim ID",
    "Produto",
    "SKU",
    "Quantidade",
    "Valor Retido",
    "Status",
    "Motivo",
    "Descrição do Motivo",
    "Comprador",
    "Data Criação",
    "Conta",
]
DETAIL_COLUMNS = ["Data Atualização", "Integration Account ID"]

DATE_FORMAT = "%d/%m/%Y %H:%M"


def _format_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime(DATE_FORMAT)
    return "" if value is None else str(value)


def _export_row(record: Any, include_details: bool) -> dict[str, Any]:
    row = {
        "Order ID": record_value(record, "order_id") or "",
        "Claim ID": record_value(record, "claim_id") or "",
        "Produto": record_value(record, "product_title") or "",
        "SKU": record_value(record, "sku") or "",
        "Quantidade": record_value(record, "quantity") or 0,
        "Valor Retido": record_value(record, "retained_value") or 0.0,
        "Status": record_value(record, "status") or "",
        "Motivo": extract_cancel_reason(record),
        "Descrição do Motivo": extract_detailed_reason(record),
        "Comprador": record_value(record, "buyer_nickname") or "",
        "Data Criação": _format_date(record_value(record, "created_at")),
        "Conta": record_value(record, "account_name") or "",
    }
    if include_details:
        account_id = record_value(record, "integration_account_id")
        row["Data Atualização"] = _format_date(record_value(record, "updated_at"))
        row["Integration Account ID"] = "" if account_id is None else str(account_id)
    return row


def build_export_frame(records: Iterable[Any], include_details: bool = False) -> pd.DataFrame:
    """One row per record, in the order given."""
    columns = EXPORT_COLUMNS + (DETAIL_COLUMNS if include_details else [])
    rows = [_export_row(record, include_details) for record in records]
    return pd.DataFrame(rows, columns=columns)


def build_analytics_frame(snapshot: MetricsSnapshot) -> pd.DataFrame:
    """Long-format metric/value table (distributions flattened as ``group:bucket``)."""
    metrics: list[str] = []
    values: list[Any] = []
    for name, value in snapshot.to_dict().items():
        if isinstance(value, dict):
            for bucket, count in sorted(value.items()):
                metrics.append(f"{name}:{bucket}")
                values.append(count)
        else:
            metrics.append(name)
            values.append(value)
    # object dtype keeps counts as ints next to the float rates
    return pd.DataFrame({"metric": metrics, "value": pd.Series(values, dtype=object)})


def to_csv(frame: pd.DataFrame) -> str:
    """UTF-8 CSV with a BOM so spreadsheet apps keep the accents."""
    return "\ufeff" + frame.to_csv(index=False)
