"""Keyword heuristics proposing a pending item type for unmatched records."""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from ..config import MatchingConfig
from ..models.reconciliation import PendingItemType
from ..models.transaction import ZERO, BankTransaction, GeneralLedgerEntry, RecordSide
from .strategies import TextSimilarity


@dataclass
class UnmatchedRecord:
    """A record with no counterpart, and what it most likely is."""

    side: RecordSide
    record_id: str
    amount: Decimal
    record_date: Optional[date]
    description: str
    proposed_type: PendingItemType
    confidence: Decimal
    reason: str
    reference: Optional[str] = None
    third_party: Optional[str] = None


class UnmatchedClassifier:
    """
    Propose the pending item type explaining a record found on one side only.

    A bank line missing from the books is something the bookkeeper has not
    recorded yet (credit, interest, fees, agios, direct debit). A ledger entry
    missing from the statement is something the bank has not processed yet
    (cheque not cashed, deposit in transit).
    """

    def __init__(self, config: MatchingConfig):
        self.keywords = config.heuristics
        self.text = TextSimilarity(config)

    def _contains(self, text: str, keywords: list[str]) -> bool:
        padded = f" {text} "
        for keyword in keywords:
            normalized = self.text.normalize(keyword)
            if not normalized:
                continue
            # A trailing space marks an abbreviation that must be a whole word ("vir ")
            needle = f" {normalized} " if keyword.endswith(" ") else normalized
            if needle in padded:
                return True
        return False

    def classify_bank_transaction(self, txn: BankTransaction) -> UnmatchedRecord:
        text = self.text.normalize(txn.description)
        if txn.amount > ZERO:
            if self._contains(text, self.keywords.transfer_keywords):
                result = (PendingItemType.CREDIT_NOT_RECORDED, 85, "Incoming transfer not yet recorded in the books")
            elif self._contains(text, self.keywords.interest_keywords):
                result = (PendingItemType.INTEREST_NOT_RECORDED, 90, "Bank interest to record")
            else:
                result = (PendingItemType.CREDIT_NOT_RECORDED, 70, "Unidentified bank credit, check its source")
        else:
            if self._contains(text, self.keywords.fees_keywords):
                result = (PendingItemType.BANK_FEES_NOT_RECORDED, 90, "Bank fees to record")
            elif self._contains(text, self.keywords.agios_keywords):
                result = (PendingItemType.BANK_CHARGES_NOT_RECORDED, 90, "Overdraft charges (agios) to record")
            elif self._contains(text, self.keywords.direct_debit_keywords):
                result = (PendingItemType.DIRECT_DEBIT_NOT_RECORDED, 85, "Direct debit to record")
            else:
                result = (PendingItemType.DEBIT_NOT_RECORDED, 70, "Unidentified bank debit, check its nature")

        item_type, confidence, reason = result
        return UnmatchedRecord(
            side=RecordSide.BANK,
            record_id=txn.id,
            amount=abs(txn.amount),
            record_date=txn.transaction_date,
            description=txn.description,
            proposed_type=item_type,
            confidence=Decimal(confidence),
            reason=reason,
            reference=txn.bank_reference,
            third_party=txn.third_party_name,
        )

    def classify_ledger_entry(self, entry: GeneralLedgerEntry) -> UnmatchedRecord:
        text = self.text.normalize(f"{entry.reference or ''} {entry.description}")
        if entry.signed_amount < ZERO:
            if self._contains(text, self.keywords.cheque_keywords):
                result = (PendingItemType.CHEQUE_ISSUED_NOT_CASHED, 90, "Cheque issued, not yet cashed by the payee")
            elif self._contains(text, self.keywords.transfer_keywords):
                result = (PendingItemType.DEPOSIT_IN_TRANSIT, 80, "Transfer recorded in the books, still processing at the bank")
            else:
                result = (PendingItemType.CHEQUE_ISSUED_NOT_CASHED, 65, "Payment recorded in the books, not yet debited by the bank")
        else:
            result = (PendingItemType.DEPOSIT_IN_TRANSIT, 70, "Receipt recorded in the books, still processing at the bank")

        item_type, confidence, reason = result
        return UnmatchedRecord(
            side=RecordSide.LEDGER,
            record_id=entry.id,
            amount=abs(entry.signed_amount),
            record_date=entry.entry_date,
            description=entry.description,
            proposed_type=item_type,
            confidence=Decimal(confidence),
            reason=reason,
            reference=entry.reference,
            third_party=entry.third_party_name,
        )
