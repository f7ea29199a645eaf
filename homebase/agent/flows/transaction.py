from __future__ import annotations

from typing import Any, Dict, List, Optional

from ...config import TRANSACTION_SOURCES
from ...models import ChatResponse
from ...utils import parse_amount, parse_iso_date
from ..actions import normalize_source
from ..constants import FlowKind, Intent, PendingAction
from ..formatters import format_extracted_transactions, format_transaction
from ..schemas import Extraction, TransactionPayload
from ..turn import Turn
from .base import Flow, Stage, extracted_items

SOURCES_PROMPT = f"Valid sources: {', '.join(TRANSACTION_SOURCES)}"


def missing_transaction_fields(transaction: Dict[str, Any]) -> List[str]:
  missing = []
  if not str(transaction.get("merchant") or "").strip():
    missing.append("merchant")
  if parse_amount(transaction.get("amount")) is None:
    missing.append("amount")
  if parse_iso_date(transaction.get("date")) is None:
    missing.append("date")
  if normalize_source(transaction.get("source")) is None:
    missing.append("source")
  return missing


def normalize_transaction(transaction: Dict[str, Any]) -> Dict[str, Any]:
  cleaned = dict(transaction)
  cleaned["amount"] = parse_amount(cleaned.get("amount"))
  source = normalize_source(cleaned.get("source"))
  cleaned["source"] = source
  if cleaned.get("confidence") not in ("low", "medium", "high"):
    cleaned.pop("confidence", None)
  return TransactionPayload.model_validate(cleaned).model_dump(exclude_none=True)


class TransactionFlow(Flow):
  kind = FlowKind.TRANSACTION.value
  intent = Intent.CREATE_TRANSACTION.value
  singular_label = "transaction"
  plural_label = "transactions"
  payload_key = "transaction"
  clarify_action = PendingAction.CLARIFY_TRANSACTION_FIELDS.value
  confirm_action = PendingAction.CONFIRM_TRANSACTION.value
  multi_action = PendingAction.SELECT_TRANSACTION_FROM_EXTRACTION.value
  multi_payload_key = "transactions"
  allow_multi_on_correction = True
  error_missing_fields = ["merchant", "amount", "date", "source"]
  error_fallback = "What is the merchant, amount, date, and source?"

  def extract(self, turn: Turn, image_ref: Optional[str] = None) -> Extraction:
    return self.extractor.extract_transaction(turn.text, image_ref=image_ref,
                                              context=turn.ctx.recent_context)

  def normalize(self, turn: Turn, payload: Dict[str, Any]) -> Dict[str, Any]:
    items = extracted_items(payload, "transactions")
    if len(items) == 1:
      payload = items[0]
    return normalize_transaction(payload)

  def missing_fields(self, payload: Dict[str, Any]) -> List[str]:
    return missing_transaction_fields(payload)

  def confirm_prompt(self, payload: Dict[str, Any], stage: Stage = "initial") -> str:
    if stage == "corrected":
      base = "Got it. I’m ready to add this transaction:"
    else:
      base = "I’m ready to add this transaction:"
    return f"{base}\n\n{format_transaction(payload)}\n\nShould I add it?"

  def execute(self, turn: Turn, payload: Dict[str, Any]) -> ChatResponse:
    return self.actions.create_transaction(turn, payload)

  def multi_items(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    items = extracted_items(payload, "transactions")
    return items if len(items) > 1 else []

  def multi_formatter(self, items: List[Dict[str, Any]]) -> str:
    return format_extracted_transactions(items)

  def extra_prompt(self, turn: Turn, stage: Stage, payload: Dict[str, Any],
                   missing: List[str]) -> Optional[str]:
    return SOURCES_PROMPT
