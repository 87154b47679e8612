import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from django.db import transaction

from ..exceptions import (
    InsufficientBalance,
    SettlementException,
    TransactionAborted,
    ValidationError,
)
from ..models import LedgerAccount, LedgerEntry
from ..signals import ledger_entry_posted
from ..utils import audit, quantize, verify_amount, verify_percentage

logger = logging.getLogger("dj_settlement.ledger")

ZERO = Decimal("0")


@dataclass
class Posting:
    """One leg of a ledger posting, before it is written."""

    operator_id: str
    type: str
    amount: Decimal
    description: str = ""
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None


@dataclass
class TransferResult:
    debit: LedgerEntry
    credit: LedgerEntry


@dataclass
class LedgerPage:
    entries: List[LedgerEntry]
    total: int
    page: int
    limit: int
    total_pages: int


@dataclass
class FeeDeduction:
    fee_amount: Decimal
    net_amount: Decimal
    debit_entry: LedgerEntry


@dataclass
class PaymentResult:
    credit_entry: LedgerEntry
    fee_debit_entry: Optional[LedgerEntry]
    fee_amount: Decimal
    net_amount: Decimal


class LedgerService:
    """
    Append-only operator ledger.

    Every write locks the operator's LedgerAccount row before reading the latest
    balance, so the read-compute-insert sequence is serialized per operator.
    Multi-operator postings lock in sorted operator-id order.
    """

    MAX_PAGE_SIZE = 100

    @staticmethod
    def verify_type(entry_type):
        if entry_type not in (LedgerEntry.TYPE_CREDIT, LedgerEntry.TYPE_DEBIT):
            raise ValidationError(f"Unknown entry type: {entry_type!r}")
        return entry_type

    @staticmethod
    def verify_operator(operator_id):
        if not operator_id or not str(operator_id).strip():
            raise ValidationError("Operator id is required.")
        return str(operator_id)

    @classmethod
    def _normalize(cls, posting):
        if isinstance(posting, dict):
            posting = Posting(**posting)
        return Posting(
            operator_id=cls.verify_operator(posting.operator_id),
            type=cls.verify_type(posting.type),
            amount=verify_amount(posting.amount),
            description=posting.description or "",
            reference_type=posting.reference_type,
            reference_id=posting.reference_id,
        )

    @staticmethod
    def _lock_operators(operator_ids):
        """
        Lock the LedgerAccount row of every operator, in sorted order.
        Must be called inside transaction.atomic().
        """
        for operator_id in sorted(set(operator_ids)):
            LedgerAccount.objects.get_or_create(operator_id=operator_id)
            LedgerAccount.objects.select_for_update().get(operator_id=operator_id)

    @staticmethod
    def _append(posting):
        """Write one entry. Caller must hold the operator's lock."""
        latest = LedgerEntry.objects.latest_for(posting.operator_id)
        current = latest.balance_after if latest else ZERO
        sequence = latest.sequence + 1 if latest else 1

        if posting.type == LedgerEntry.TYPE_CREDIT:
            new_balance = current + posting.amount
        else:
            new_balance = current - posting.amount

        # Check balance *after* acquiring lock
        if new_balance < 0:
            raise InsufficientBalance(
                f"Insufficient balance. Current: {current}, Required: {posting.amount}"
            )

        entry = LedgerEntry.objects.create(
            operator_id=posting.operator_id,
            sequence=sequence,
            type=posting.type,
            amount=posting.amount,
            balance_after=new_balance,
            description=posting.description,
            reference_type=posting.reference_type,
            reference_id=posting.reference_id,
        )
        ledger_entry_posted.send(sender=LedgerService, entry=entry)
        return entry

    @staticmethod
    def _audit_entry(entry, actor=None):
        audit(
            "ledger.entry_posted",
            actor=actor,
            operator_id=entry.operator_id,
            entry_uuid=str(entry.uuid),
            sequence=entry.sequence,
            type=entry.type,
            amount=entry.amount,
            balance_after=entry.balance_after,
            reference_type=entry.reference_type,
            reference_id=entry.reference_id,
        )

    @classmethod
    def get_balance(cls, operator_id):
        """Latest ``balance_after`` for the operator, or 0 when it has no entries."""
        latest = LedgerEntry.objects.latest_for(operator_id)
        if latest is None:
            return quantize(ZERO)
        return latest.balance_after

    @classmethod
    def has_sufficient_balance(cls, operator_id, amount):
        return cls.get_balance(operator_id) >= Decimal(str(amount))

    @classmethod
    def post_entry(
        cls,
        operator_id,
        type,
        amount,
        description="",
        reference_type=None,
        reference_id=None,
        actor=None,
    ):
        """
        Post a single CREDIT or DEBIT.
        Raises InsufficientBalance, without writing anything, if a DEBIT would
        take the balance below zero.
        """
        posting = cls._normalize(
            Posting(operator_id, type, amount, description, reference_type, reference_id)
        )

        with transaction.atomic():
            cls._lock_operators([posting.operator_id])
            entry = cls._append(posting)

        cls._audit_entry(entry, actor)
        return entry

    @classmethod
    def post_entries_atomically(cls, entries, actor=None):
        """
        Apply several postings as one all-or-nothing transaction.
        Legs are applied in the given order; if any leg fails, TransactionAborted
        is raised and no entry from the call persists.
        """
        postings = [cls._normalize(entry) for entry in entries]
        if not postings:
            raise ValidationError("At least one posting is required.")

        try:
            with transaction.atomic():
                cls._lock_operators(p.operator_id for p in postings)
                written = []
                for index, posting in enumerate(postings):
                    try:
                        written.append(cls._append(posting))
                    except SettlementException as exc:
                        raise TransactionAborted(
                            f"Leg {index} for {posting.operator_id} failed: {exc}"
                        ) from exc
        except TransactionAborted:
            logger.warning(
                "Atomic posting of %d legs rolled back", len(postings), exc_info=True
            )
            raise

        for entry in written:
            cls._audit_entry(entry, actor)
        return written

    @classmethod
    def transfer(
        cls,
        from_operator_id,
        to_operator_id,
        amount,
        description="",
        reference_type=None,
        reference_id=None,
        actor=None,
    ):
        """Debit the source and credit the destination, both or neither."""
        amount = verify_amount(amount)
        from_operator_id = cls.verify_operator(from_operator_id)
        to_operator_id = cls.verify_operator(to_operator_id)
        if from_operator_id == to_operator_id:
            raise ValidationError("Cannot transfer to the same operator.")

        with transaction.atomic():
            cls._lock_operators([from_operator_id, to_operator_id])
            debit = cls._append(
                Posting(
                    from_operator_id,
                    LedgerEntry.TYPE_DEBIT,
                    amount,
                    f"Transfer to {to_operator_id}: {description}",
                    reference_type,
                    reference_id,
                )
            )
            credit = cls._append(
                Posting(
                    to_operator_id,
                    LedgerEntry.TYPE_CREDIT,
                    amount,
                    f"Transfer from {from_operator_id}: {description}",
                    reference_type,
                    reference_id,
                )
            )

        cls._audit_entry(debit, actor)
        cls._audit_entry(credit, actor)
        return TransferResult(debit=debit, credit=credit)

    @classmethod
    def list_entries(
        cls,
        operator_id,
        type=None,
        reference_type=None,
        reference_id=None,
        page=1,
        limit=20,
    ):
        """Newest-first page of an operator's entries."""
        if page < 1:
            raise ValidationError("Page must be 1 or greater.")
        if not 1 <= limit <= cls.MAX_PAGE_SIZE:
            raise ValidationError(f"Limit must be between 1 and {cls.MAX_PAGE_SIZE}.")

        qs = LedgerEntry.objects.for_operator(operator_id)
        if type:
            qs = qs.filter(type=cls.verify_type(type))
        if reference_type:
            qs = qs.filter(reference_type=reference_type)
        if reference_id:
            qs = qs.filter(reference_id=reference_id)

        total = qs.count()
        offset = (page - 1) * limit
        entries = list(qs.order_by("-sequence")[offset : offset + limit])
        return LedgerPage(
            entries=entries,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit),
        )

    @classmethod
    def verify_entries(cls, operator_id):
        """
        Recompute the running balance from scratch and compare it with every
        stored snapshot. Returns False on the first mismatch.
        """
        running = ZERO
        expected_sequence = 1
        for entry in LedgerEntry.objects.for_operator(operator_id).order_by("sequence"):
            running += entry.signed_amount
            if entry.sequence != expected_sequence:
                return False
            if running < 0 or entry.balance_after != running:
                return False
            expected_sequence += 1
        return True

    @classmethod
    def credit_operator(
        cls, operator_id, amount, description, reference_type=None, reference_id=None
    ):
        entry = cls.post_entry(
            operator_id,
            LedgerEntry.TYPE_CREDIT,
            amount,
            description,
            reference_type,
            reference_id,
        )
        logger.info("Operator %s credited %s", operator_id, entry.amount)
        return entry

    @classmethod
    def refund(cls, operator_id, amount, reason, reference_type=None, reference_id=None):
        entry = cls.post_entry(
            operator_id,
            LedgerEntry.TYPE_CREDIT,
            amount,
            f"Refund: {reason}",
            reference_type or "refund",
            reference_id,
        )
        logger.info("Refund of %s posted for operator %s", entry.amount, operator_id)
        return entry

    @staticmethod
    def calculate_fee(amount, fee_percentage):
        amount = verify_amount(amount)
        fee_percentage = verify_percentage(fee_percentage)
        return quantize(amount * fee_percentage / Decimal("100"))

    @classmethod
    def deduct_fees(
        cls,
        operator_id,
        amount,
        fee_percentage=Decimal("5"),
        reference_type="bid",
        reference_id=None,
    ):
        """Debit a percentage platform fee on ``amount`` from the operator."""
        fee_amount = cls.calculate_fee(amount, fee_percentage)
        debit = cls.post_entry(
            operator_id,
            LedgerEntry.TYPE_DEBIT,
            fee_amount,
            f"Platform fee ({fee_percentage}%) for {reference_type} {reference_id}",
            "fee",
            reference_id,
        )
        net_amount = Decimal(str(amount)) - fee_amount
        logger.info(
            "Fee %s deducted from operator %s (net %s)", fee_amount, operator_id, net_amount
        )
        return FeeDeduction(fee_amount=fee_amount, net_amount=net_amount, debit_entry=debit)

    @classmethod
    def process_payment(
        cls, operator_id, payment_amount, shipment_id, fee_percentage=Decimal("5")
    ):
        """
        Credit a shipment payment and debit the platform fee in one atomic posting.
        """
        payment_amount = verify_amount(payment_amount)
        fee_amount = cls.calculate_fee(payment_amount, fee_percentage)

        postings = [
            Posting(
                operator_id,
                LedgerEntry.TYPE_CREDIT,
                payment_amount,
                f"Payment for shipment {shipment_id}",
                "shipment",
                shipment_id,
            )
        ]
        if fee_amount > 0:
            postings.append(
                Posting(
                    operator_id,
                    LedgerEntry.TYPE_DEBIT,
                    fee_amount,
                    f"Platform fee ({fee_percentage}%) for shipment {shipment_id}",
                    "fee",
                    shipment_id,
                )
            )

        entries = cls.post_entries_atomically(postings)
        logger.info(
            "Payment %s processed for operator %s on shipment %s (fee %s)",
            payment_amount,
            operator_id,
            shipment_id,
            fee_amount,
        )
        return PaymentResult(
            credit_entry=entries[0],
            fee_debit_entry=entries[1] if len(entries) > 1 else None,
            fee_amount=fee_amount,
            net_amount=payment_amount - fee_amount,
        )
