from __future__ import annotations

import csv
import json
from datetime import datetime, timezone
from io import StringIO
from typing import Any

from payoutledger.errors import UnsupportedReportFormat
from payoutledger.models.settlement import Settlement


def build_report(settlement: Settlement, user_info: dict[str, Any] | None = None) -> dict[str, Any]:
    data = settlement.model_dump(mode="json")
    user_info = user_info or {}
    return {
        "settlement": {
            "id": data["id"],
            "user_id": data["user_id"],
            "user_type": data["user_type"],
            "period": data["period"],
            "status": data["status"],
        },
        "financial": {
            "gross_amount": data["gross_amount"],
            "fees": data["fees"],
            "taxes": data["taxes"],
            "net_amount": data["net_amount"],
            "currency": data["currency"],
        },
        "transactions": data["transaction_ids"],
        "processing": data["processing"],
        "user": {
            "name": user_info.get("name"),
            "email": user_info.get("email"),
            "business_number": user_info.get("business_number"),
            "bank_account": data["bank_account"],
        },
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }


def _csv_rows(report: dict[str, Any]) -> list[list[str]]:
    financial = report["financial"]
    rows = [["section", "type", "rate", "amount", "description"]]
    rows.append(["gross", "gross_amount", "", financial["gross_amount"], ""])
    for section in ("fees", "taxes"):
        for item in financial[section]["items"]:
            rows.append([section, item["type"], item["rate"] or "", item["amount"], item["description"]])
        rows.append([section, "total", "", financial[section]["total"], ""])
    rows.append(["net", "net_amount", "", financial["net_amount"], financial["currency"]])
    return rows


def render_report(report: dict[str, Any], fmt: str = "json") -> dict[str, str]:
    settlement_id = report["settlement"]["id"]
    fmt = fmt.lower()
    if fmt == "json":
        return {
            "type": "json",
            "filename": f"settlement_{settlement_id}.json",
            "data": json.dumps(report, ensure_ascii=False, indent=2),
        }
    if fmt == "csv":
        buffer = StringIO()
        csv.writer(buffer).writerows(_csv_rows(report))
        return {"type": "csv", "filename": f"settlement_{settlement_id}.csv", "data": buffer.getvalue()}
    raise UnsupportedReportFormat(fmt)
