"""HTTP client and table shaping used by the Streamlit dashboard."""
from typing import Optional

import pandas as pd
import requests

PARTICIPANT_COLUMNS = ["name", "is_host", "subtotal", "tax_amount", "service_amount", "discount_amount",
                       "amount_share", "payment_status", "paid_at"]


class ApiError(Exception):
    def __init__(self, status_code: int, kind: str, message: str):
        super().__init__(f"{kind}: {message}")
        self.status_code = status_code
        self.kind = kind
        self.message = message


class SplitClient:
    def __init__(self, base_url: str, http=None):
        self.base_url = base_url.rstrip("/")
        self.http = http or requests.Session()

    def _handle(self, r):
        if r.status_code >= 400:
            try:
                body = r.json()
            except ValueError:
                body = {}
            raise ApiError(r.status_code, body.get("error", "HTTP_ERROR"), body.get("message", r.text))
        return r.json()

    def get(self, path: str, **params):
        return self._handle(self.http.get(f"{self.base_url}{path}", params=params or None))

    def post(self, path: str, payload: dict):
        return self._handle(self.http.post(f"{self.base_url}{path}", json=payload))

    def bill_view(self, bill_id: int, user_id: Optional[int] = None) -> dict:
        if user_id is None:
            return self.get(f"/bills/{bill_id}")
        return self.get(f"/bills/{bill_id}", user_id=user_id)

    def create_bill(self, payload: dict) -> dict:
        return self.post("/bills", payload)

    def join(self, bill_code: str, user_id: int) -> dict:
        return self.post("/bills/join", {"bill_code": bill_code, "user_id": user_id})

    def pay(self, participant_id: int, amount, pin: str, scheduled_date: Optional[str] = None) -> dict:
        payload = {"participant_id": participant_id, "amount": str(amount), "pin": pin}
        if scheduled_date:
            payload["scheduled_date"] = scheduled_date
        return self.post("/payments/pay", payload)


def participants_frame(view: dict) -> pd.DataFrame:
    df = pd.DataFrame(view.get("participants", []))
    if df.empty:
        return pd.DataFrame(columns=PARTICIPANT_COLUMNS)
    return df[PARTICIPANT_COLUMNS]


def items_frame(view: dict) -> pd.DataFrame:
    rows = []
    for item in view.get("items", []):
        assigned = sum(float(a["amount"]) for a in item["assignments"])
        rows.append({
            "item_name": item["item_name"],
            "price": float(item["price"]),
            "quantity": item["quantity"],
            "is_sharing": item["is_sharing"],
            "line_total": float(item["price"]) * item["quantity"],
            "assigned": assigned,
        })
    df = pd.DataFrame(rows, columns=["item_name", "price", "quantity", "is_sharing", "line_total", "assigned"])
    df["unassigned"] = df["line_total"] - df["assigned"]
    return df


def summary_frame(view: dict) -> pd.DataFrame:
    summary = view.get("payment_summary", {})
    return pd.DataFrame(
        [{"metric": k, "value": float(v)} for k, v in summary.items()],
        columns=["metric", "value"],
    )
