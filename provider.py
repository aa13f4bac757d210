from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import Settings, get_settings
from periods import Period


logger = logging.getLogger(__name__)

PAGE_SIZE = 500


class ProviderError(RuntimeError):
    pass


@dataclass(frozen=True)
class ProviderTransaction:
    provider_id: str
    amount: Any
    description: Optional[str]
    date: date
    raw_category: Optional[str]


def parse_provider_transaction(raw: dict[str, Any]) -> ProviderTransaction:
    try:
        pfc = raw.get("personal_finance_category") or {}
        return ProviderTransaction(
            provider_id=str(raw["transaction_id"]),
            amount=raw.get("amount"),
            description=raw.get("name"),
            date=date.fromisoformat(raw["date"]),
            raw_category=pfc.get("primary") if isinstance(pfc, dict) else None,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ProviderError("Unexpected transaction in provider response") from exc


class PlaidClient:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.settings.plaid_api_base}{path}"
        body = {
            "client_id": self.settings.plaid_client_id,
            "secret": self.settings.plaid_secret,
            **payload,
        }
        req = Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.settings.plaid_timeout_secs) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            logger.error(f"provider_request_failed: path={path} error={exc}")
            raise ProviderError(f"Failed to call provider endpoint {path}") from exc

    def fetch_transactions(
        self, access_token: str, period: Period
    ) -> list[ProviderTransaction]:
        collected: list[ProviderTransaction] = []
        offset = 0
        while True:
            payload = self._post(
                "/transactions/get",
                {
                    "access_token": access_token,
                    "start_date": period.start.isoformat(),
                    "end_date": period.end.isoformat(),
                    "options": {"count": PAGE_SIZE, "offset": offset},
                },
            )
            try:
                page = payload["transactions"]
                total = int(payload.get("total_transactions", len(page)))
            except (KeyError, TypeError, ValueError) as exc:
                raise ProviderError("Unexpected provider response") from exc
            collected.extend(parse_provider_transaction(raw) for raw in page)
            offset += len(page)
            if not page or offset >= total:
                break
        logger.info(
            f"provider_fetch: transactions={len(collected)} "
            f"window={period.start}..{period.end}"
        )
        return collected
