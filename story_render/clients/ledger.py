from __future__ import annotations

import logging
from threading import Lock
from typing import Dict, List, Optional

import httpx

from story_render.models.domain import CreditTransaction, LedgerResult


class CreditLedgerClient:
    """Credit balance boundary.

    Talks to the external ledger over HTTP when ``api_url`` is set, otherwise keeps
    balances and transactions in memory with every user starting at ``initial_balance``.
    """

    def __init__(
        self,
        api_url: str | None,
        api_key: str | None = None,
        timeout: float = 10.0,
        initial_balance: int = 30,
        logger: Optional[logging.Logger] = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_url = (api_url or "").rstrip("/")
        self.api_key = (api_key or "").strip()
        self.timeout = timeout
        self.initial_balance = initial_balance
        self.log = logger or logging.getLogger(__name__)
        self._transport = transport
        self._balances: Dict[str, int] = {}
        self._transactions: List[CreditTransaction] = []
        self._lock = Lock()

    def is_configured(self) -> bool:
        return bool(self.api_url)

    def check_balance(self, user_id: str) -> int:
        if not self.is_configured():
            with self._lock:
                return self._balances.setdefault(user_id, self.initial_balance)
        with self._client() as client:
            response = client.get(f"/users/{user_id}/credits")
            response.raise_for_status()
            return int(response.json().get("balance") or 0)

    def deduct(self, user_id: str, amount: int, reason: str, story_id: str | None = None) -> LedgerResult:
        if not self.is_configured():
            with self._lock:
                balance = self._balances.setdefault(user_id, self.initial_balance)
                if balance < amount:
                    return LedgerResult(
                        success=False,
                        new_balance=balance,
                        error=f"Insufficient credits. You have {balance} credits but need {amount}.",
                    )
                self._balances[user_id] = balance - amount
                self._record(user_id, -amount, "deduction_video", reason, story_id)
                return LedgerResult(success=True, new_balance=balance - amount)
        return self._post(user_id, "deduct", amount, "deduction_video", reason, story_id)

    def refund(self, user_id: str, amount: int, reason: str, story_id: str | None = None) -> LedgerResult:
        if not self.is_configured():
            with self._lock:
                balance = self._balances.setdefault(user_id, self.initial_balance) + amount
                self._balances[user_id] = balance
                self._record(user_id, amount, "refund", reason, story_id)
                return LedgerResult(success=True, new_balance=balance)
        return self._post(user_id, "refund", amount, "refund", reason, story_id)

    def transactions(self, user_id: str | None = None) -> List[CreditTransaction]:
        with self._lock:
            return [tx.model_copy() for tx in self._transactions if user_id is None or tx.user_id == user_id]

    def set_balance(self, user_id: str, balance: int) -> None:
        with self._lock:
            self._balances[user_id] = balance

    def _post(
        self,
        user_id: str,
        action: str,
        amount: int,
        tx_type: str,
        reason: str,
        story_id: str | None,
    ) -> LedgerResult:
        payload = {"amount": amount, "type": tx_type, "description": reason, "story_id": story_id}
        with self._client() as client:
            response = client.post(f"/users/{user_id}/credits:{action}", json=payload)
            if response.status_code >= 400:
                self.log.warning(
                    "ledger request rejected",
                    extra={"user_id": user_id, "action": action, "status": response.status_code},
                )
                return LedgerResult(success=False, new_balance=0, error=response.text or f"HTTP {response.status_code}")
            try:
                body = response.json()
                return LedgerResult(
                    success=bool(body.get("success", True)),
                    new_balance=int(body.get("new_balance") or 0),
                )
            except (ValueError, AttributeError):
                self.log.warning(
                    "ledger reply unreadable",
                    extra={"user_id": user_id, "action": action, "status": response.status_code},
                )
                return LedgerResult(success=False, new_balance=0, error="Unreadable ledger response")

    def _client(self) -> httpx.Client:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        return httpx.Client(base_url=self.api_url, headers=headers, timeout=self.timeout, transport=self._transport)

    def _record(self, user_id: str, amount: int, tx_type: str, reason: str, story_id: str | None) -> None:
        self._transactions.append(
            CreditTransaction(
                user_id=user_id,
                amount=amount,
                type=tx_type,
                description=reason,
                story_id=story_id,
            )
        )
