"""
Contract and payment admission checks.

A task is admissible only when its contract is signed by the claimed
requester and unexpired, and its payment proof is signed by that same
requester, covers the contract's price, and has not been used before.

Signatures are EIP-191 ``personal_sign`` signatures over the canonical
JSON of the signed model's fields (sorted keys, compact separators,
wire field names), produced and recovered with ``eth-account``.
"""

from __future__ import annotations

import heapq
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Union

from eth_account import Account
from eth_account.messages import encode_defunct

from agentwire_runtime.types import Contract, Payment

logger = logging.getLogger(__name__)

PaymentVerifier = Callable[[Payment, Contract], bool]


class RejectionReason(str, Enum):
    SIGNATURE_INVALID = "SignatureInvalid"
    EXPIRED = "Expired"
    TASK_MISMATCH = "TaskMismatch"
    PAYMENT_INVALID = "PaymentInvalid"
    PAYMENT_INSUFFICIENT = "PaymentInsufficient"
    PAYMENT_REPLAYED = "PaymentReplayed"


@dataclass(frozen=True)
class Admitted:
    task_id: str

    @property
    def admitted(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected:
    task_id: str
    reason: RejectionReason

    @property
    def admitted(self) -> bool:
        return False


Verdict = Union[Admitted, Rejected]


# ============================================================
#  Signing helpers
# ============================================================


def canonical_message(fields: dict[str, Any]) -> str:
    return json.dumps(fields, sort_keys=True, separators=(",", ":"))


def _sign(fields: dict[str, Any], private_key: str) -> str:
    signable = encode_defunct(text=canonical_message(fields))
    signed = Account.sign_message(signable, private_key)
    sig_hex = signed.signature.hex()
    if not sig_hex.startswith("0x"):
        sig_hex = "0x" + sig_hex
    return sig_hex


def recover_signer(fields: dict[str, Any], signature: str) -> str | None:
    """Return the address that signed ``fields``, or None if unrecoverable."""
    if not signature:
        return None
    try:
        return Account.recover_message(
            encode_defunct(text=canonical_message(fields)),
            signature=signature,
        )
    except Exception:
        # eth-account raises several unrelated types for malformed signatures
        logger.debug("Signature recovery failed", exc_info=True)
        return None


def sign_contract(contract: Contract, private_key: str) -> Contract:
    """Return a copy of ``contract`` signed with the requester's key."""
    return contract.model_copy(update={"signature": _sign(contract.signing_fields(), private_key)})


def sign_payment(payment: Payment, private_key: str) -> Payment:
    """Return a copy of ``payment`` signed with the payer's key."""
    return payment.model_copy(update={"signature": _sign(payment.signing_fields(), private_key)})


def _same_address(a: str | None, b: str | None) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


# ============================================================
#  Pipeline
# ============================================================


class VerificationPipeline:
    """Decides whether a contract/payment pair may reach a handler.

    Args:
        payment_verifier: Optional settlement check run after the payment
            signature is accepted. Returning False (or raising) rejects
            the payment as ``PaymentInvalid``.
        history_size: Upper bound on remembered consumed task ids.
        clock: Returns the current unix time in seconds.
    """

    def __init__(
        self,
        *,
        payment_verifier: PaymentVerifier | None = None,
        history_size: int = 10000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._payment_verifier = payment_verifier
        self._history_size = history_size
        self._clock = clock
        # task id -> contract expiry
        self._consumed: dict[str, float] = {}
        self._expiry_heap: list[tuple[float, str]] = []

    def __len__(self) -> int:
        return len(self._consumed)

    def is_consumed(self, task_id: str) -> bool:
        return task_id in self._consumed

    def verify(self, contract: Contract, payment: Payment, *, redelivery: bool = False) -> Verdict:
        """Run the admission checks in order, stopping at the first failure.

        ``redelivery`` skips the replay check for a task id the caller
        already tracks; every other check still applies.
        """
        self.prune()
        reason = self._check(contract, payment, redelivery)
        if reason is not None:
            logger.warning("Rejected task %s: %s", contract.task_id, reason.value)
            return Rejected(contract.task_id, reason)
        self._remember(contract)
        return Admitted(contract.task_id)

    def _check(self, contract: Contract, payment: Payment, redelivery: bool) -> RejectionReason | None:
        signer = recover_signer(contract.signing_fields(), contract.signature)
        if not _same_address(signer, contract.requester):
            return RejectionReason.SIGNATURE_INVALID

        if self._clock() >= contract.expires_at:
            return RejectionReason.EXPIRED

        if payment.task_id != contract.task_id:
            return RejectionReason.TASK_MISMATCH

        payer = recover_signer(payment.signing_fields(), payment.signature)
        if not _same_address(payer, payment.payer) or not _same_address(payer, contract.requester):
            return RejectionReason.PAYMENT_INVALID
        if self._payment_verifier is not None and not self._run_payment_verifier(payment, contract):
            return RejectionReason.PAYMENT_INVALID
        if payment.amount < contract.price:
            return RejectionReason.PAYMENT_INSUFFICIENT

        if not redelivery and contract.task_id in self._consumed:
            return RejectionReason.PAYMENT_REPLAYED
        return None

    def _run_payment_verifier(self, payment: Payment, contract: Contract) -> bool:
        try:
            return bool(self._payment_verifier(payment, contract))
        except Exception:
            logger.exception("Payment verifier failed for task %s", payment.task_id)
            return False

    def _remember(self, contract: Contract) -> None:
        if self._consumed.get(contract.task_id) == contract.expires_at:
            return
        self._consumed[contract.task_id] = contract.expires_at
        heapq.heappush(self._expiry_heap, (contract.expires_at, contract.task_id))
        while len(self._consumed) > self._history_size:
            self._pop_oldest()

    def _pop_oldest(self) -> None:
        expiry, task_id = heapq.heappop(self._expiry_heap)
        if self._consumed.get(task_id) == expiry:
            del self._consumed[task_id]

    def prune(self) -> int:
        """Forget consumed task ids whose contracts have expired."""
        now = self._clock()
        removed = 0
        while self._expiry_heap and self._expiry_heap[0][0] <= now:
            expiry, task_id = heapq.heappop(self._expiry_heap)
            if self._consumed.get(task_id) == expiry:
                del self._consumed[task_id]
                removed += 1
        return removed
