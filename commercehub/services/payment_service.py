"""
Payment Service - Join asynchronously arriving payments onto orders
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Dict, Any, Callable, Optional
import logging

from commercehub.core.money import ZERO, from_minor_units

logger = logging.getLogger(__name__)


def _minor(money: Optional[Dict[str, Any]]) -> Decimal:
    if not money:
        return ZERO
    return from_minor_units(money.get("amount"))


@dataclass
class PaymentSummary:
    paid: Decimal = Decimal("0.00")
    fees: Decimal = Decimal("0.00")
    refunded: Decimal = Decimal("0.00")
    payments: List[Dict[str, Any]] = field(default_factory=list)
    completed: int = 0
    pending: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paid": str(self.paid),
            "fees": str(self.fees),
            "refunded": str(self.refunded),
            "completed": self.completed,
            "pending": self.pending,
        }


class PaymentReconciler:
    """
    Groups payments by order reference and totals them.
    Only COMPLETED payments count toward money; pending and failed ones are tracked only.
    Totals are recomputed from the full payment set on every call, so re-running
    over the same window after late fees settle is safe.
    """
    COMPLETED = "COMPLETED"

    @staticmethod
    def default_order_ref(payment: Dict[str, Any]) -> Optional[str]:
        return payment.get("order_id")

    @staticmethod
    def payment_amounts(payment: Dict[str, Any]):
        amount = _minor(payment.get("amount_money"))
        refunded = _minor(payment.get("refunded_money"))
        fees = sum(
            (_minor(fee.get("amount_money")) for fee in payment.get("processing_fee") or []),
            Decimal("0.00"),
        )
        return amount, fees, refunded

    @classmethod
    def reconcile(
        cls,
        orders: List[Dict[str, Any]],
        payments: List[Dict[str, Any]],
        order_ref: Callable[[Dict[str, Any]], Optional[str]] = None,
    ) -> Dict[str, PaymentSummary]:
        order_ref = order_ref or cls.default_order_ref
        summaries = {order["id"]: PaymentSummary() for order in orders}

        # Sorted so the payment list inside each summary is stable across runs
        for payment in sorted(payments, key=lambda p: str(p.get("id", ""))):
            ref = order_ref(payment)
            if ref not in summaries:
                continue
            summary = summaries[ref]
            summary.payments.append(payment)

            if payment.get("status") != cls.COMPLETED:
                summary.pending += 1
                continue

            amount, fees, refunded = cls.payment_amounts(payment)
            summary.completed += 1
            summary.paid += amount
            summary.fees += fees
            summary.refunded += refunded

        logger.debug(f"Reconciled {len(payments)} payments onto {len(orders)} orders")
        return summaries

    @staticmethod
    def merge_payment(existing: List[Dict[str, Any]], incoming: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Replace-or-append by payment id. An older version never replaces a newer one.
        """
        merged = []
        replaced = False
        for payment in existing:
            if payment.get("id") == incoming.get("id"):
                replaced = True
                if str(incoming.get("updated_at") or "") >= str(payment.get("updated_at") or ""):
                    merged.append(incoming)
                else:
                    merged.append(payment)
            else:
                merged.append(payment)
        if not replaced:
            merged.append(incoming)
        return sorted(merged, key=lambda p: str(p.get("id", "")))
