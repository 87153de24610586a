"""Receipt parsing from images and matching receipts to budgeted tasks."""

import re
from collections.abc import Callable, Mapping
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from taskpilot.pipeline.context import ContextKey, PipelineContext
from taskpilot.pipeline.executor import Pipeline
from taskpilot.pipeline.outcome import NeedsClarification, Outcome, Partial, Rejected, Success
from taskpilot.pipeline.step import (
    Step,
    extraction_step,
    generation_step,
    guard_step,
    retrieval_step,
    rule_step,
    vision_call,
)
from taskpilot.ports.base import EmbedAndSearch, TextCompletion, VisionCompletion

Category = Literal["food", "retail", "office", "travel", "entertainment", "other"]
CATEGORIES: tuple[str, ...] = ("food", "retail", "office", "travel", "entertainment", "other")


class ReceiptItem(BaseModel):
    description: str
    price: float
    quantity: float | None = None


class ReceiptData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    merchant: str
    date: str
    subtotal: float | None = None
    tax: float
    total: float
    category: Category
    items: list[ReceiptItem] | None = None
    payment_method: str | None = Field(default=None, alias="paymentMethod")
    confidence: Literal["high", "medium", "low"] | None = None


class PartialReceiptData(BaseModel):
    """What could be read from a damaged receipt; every field may be missing."""

    model_config = ConfigDict(populate_by_name=True)

    merchant: str | None = None
    date: str | None = None
    subtotal: float | None = None
    tax: float | None = None
    total: float | None = None
    category: Category | None = None
    items: list[ReceiptItem] | None = None
    payment_method: str | None = Field(default=None, alias="paymentMethod")
    confidence: Literal["high", "medium", "low"] | None = None


class ReceiptParsed(BaseModel):
    status: Literal["success"]
    receipt: ReceiptData
    notes: str | None = None


class ReceiptPartial(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Literal["partial"]
    receipt: PartialReceiptData
    missing_fields: list[str] = Field(alias="missingFields")
    message: str
    suggestions: list[str] = Field(default_factory=list)


class NotAReceipt(BaseModel):
    status: Literal["not_a_receipt"]
    reason: str
    suggestion: str | None = None


class Unreadable(BaseModel):
    status: Literal["unreadable"]
    reason: str
    suggestions: list[str] = Field(default_factory=list)


ReceiptParseResult = Annotated[
    ReceiptParsed | ReceiptPartial | NotAReceipt | Unreadable, Field(discriminator="status")
]
RECEIPT_RESULT_ADAPTER: TypeAdapter[ReceiptParseResult] = TypeAdapter(ReceiptParseResult)

IMAGE: ContextKey[bytes] = ContextKey("image")
MEDIA_TYPE: ContextKey[str] = ContextKey("media_type")
RECEIPT: ContextKey[ReceiptData] = ContextKey("receipt")
NOTES: ContextKey[str | None] = ContextKey("notes")

SEMANTIC_MATCHES: ContextKey[list[dict[str, Any]]] = ContextKey("semantic_matches")
DATE_FILTERED: ContextKey[list[dict[str, Any]]] = ContextKey("date_filtered")
RANKED_TASKS: ContextKey[list[dict[str, Any]]] = ContextKey("ranked_tasks")
ANALYSIS: ContextKey["MatchAnalysis"] = ContextKey("analysis")

RECEIPT_PROMPT = """Analyze this image and extract receipt information.

Return ONLY JSON in one of these formats:
- {"status": "success", "receipt": {...}, "notes": "..."}
- {"status": "partial", "receipt": {...}, "missingFields": [...], "message": "...", "suggestions": [...]}
- {"status": "not_a_receipt", "reason": "...", "suggestion": "..."}
- {"status": "unreadable", "reason": "...", "suggestions": [...]}

The receipt object has: merchant (string), date (YYYY-MM-DD), subtotal, tax, total
(numbers), category (food, retail, office, travel, entertainment, other), items
(description, price, quantity), paymentMethod, confidence (high, medium, low).
Use "partial" when some required fields cannot be read and list them in missingFields."""

_AMOUNT_FIELDS = ("subtotal", "tax", "total")
_AMOUNT_RE = re.compile(r"-?\d+(?:\.\d+)?")


def _to_amount(value: Any) -> Any:
    if isinstance(value, str):
        match = _AMOUNT_RE.search(value.replace(",", ""))
        return float(match.group()) if match else None
    return value


def _normalize_receipt(receipt: dict[str, Any]) -> dict[str, Any]:
    receipt = dict(receipt)
    merchant = receipt.get("merchant")
    if isinstance(merchant, dict):
        receipt["merchant"] = merchant.get("name") or merchant.get("merchant") or ""
    for name in _AMOUNT_FIELDS:
        if name in receipt:
            receipt[name] = _to_amount(receipt[name])
    category = receipt.get("category")
    if isinstance(category, str):
        category = category.strip().lower()
        receipt["category"] = category if category in CATEGORIES else "other"
    if "payment_method" in receipt and "paymentMethod" not in receipt:
        receipt["paymentMethod"] = receipt.pop("payment_method")
    items = receipt.get("items")
    if isinstance(items, list):
        receipt["items"] = [
            {**item, "price": _to_amount(item.get("price"))} if isinstance(item, dict) else item
            for item in items
        ]
    return receipt


def normalize_receipt_response(data: Any) -> Any:
    """Map the alternate shapes vision models produce onto the canonical one."""
    if not isinstance(data, dict):
        return data
    data = dict(data)
    if isinstance(data.get("status"), str):
        data["status"] = data["status"].strip().lower().replace("-", "_").replace(" ", "_")
    if "missing_fields" in data and "missingFields" not in data:
        data["missingFields"] = data.pop("missing_fields")
    if isinstance(data.get("receipt"), dict):
        data["receipt"] = _normalize_receipt(data["receipt"])
    return data


def interpret_receipt(ctx: PipelineContext, result: Any) -> "Mapping[str, Any] | Outcome":
    if isinstance(result, ReceiptPartial):
        return Partial(
            payload=result.receipt.model_dump(by_alias=True, exclude_none=True),
            missing_fields=result.missing_fields,
            message=result.message,
            suggestions=result.suggestions,
        )
    if isinstance(result, NotAReceipt):
        reason = result.reason if not result.suggestion else f"{result.reason} {result.suggestion}"
        return Rejected(reason=reason)
    if isinstance(result, Unreadable):
        return NeedsClarification(message=result.reason, suggestions=result.suggestions)
    return {str(RECEIPT): result.receipt, str(NOTES): result.notes}


def receipt_payload(ctx: PipelineContext) -> dict[str, Any]:
    payload = ctx[RECEIPT].model_dump(by_alias=True, exclude_none=True)
    if ctx[NOTES]:
        payload["notes"] = ctx[NOTES]
    return payload


def build_receipt_pipeline(vision: VisionCompletion, *, timeout: float | None = None) -> Pipeline:
    parse = extraction_step(
        "parse_receipt",
        vision_call(vision, lambda ctx: RECEIPT_PROMPT, IMAGE, MEDIA_TYPE),
        RECEIPT_RESULT_ADAPTER,
        interpret_receipt,
        normalize=normalize_receipt_response,
        timeout=timeout,
        requires=(IMAGE,),
        provides=(RECEIPT, NOTES),
    )
    return Pipeline("receipt_parse", [parse], inputs=(IMAGE,), result=receipt_payload)


# --- Receipt to task matching ---


class MatchAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    best_task_id: str | None = Field(default=None, alias="bestTaskId")
    confidence: int = Field(default=0, ge=0, le=100)
    reasoning: str = ""


def task_search_query(receipt: ReceiptData, notes: str | None = None) -> str:
    return " ".join(part for part in (receipt.merchant, receipt.category, notes or "") if part)


def filter_by_date(receipt: ReceiptData, tasks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep tasks whose work period contains the receipt date."""
    return [
        t
        for t in tasks
        if t.get("createdAt") and t.get("dueDate") and t["createdAt"][:10] <= receipt.date <= t["dueDate"][:10]
    ]


def rank_by_budget(receipt: ReceiptData, tasks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Tasks whose budget covers the receipt, best budget utilization first."""
    ranked = [
        {
            **t,
            "utilizationPercentage": round(receipt.total / t["budget"] * 100, 2),
            "remaining": round(t["budget"] - receipt.total, 2),
        }
        for t in tasks
        if t.get("budget") and receipt.total <= t["budget"]
    ]
    ranked.sort(key=lambda t: t["utilizationPercentage"], reverse=True)
    return ranked


def build_match_prompt(ctx: PipelineContext) -> str:
    receipt = ctx[RECEIPT]
    lines = []
    for i, task in enumerate(ctx[RANKED_TASKS][:3], start=1):
        lines.append(
            f"{i}. {task['title']}\n"
            f"   - Task ID: {task['id']}\n"
            f"   - Budget: ${task['budget']} ({task['utilizationPercentage']}% utilization)\n"
            f"   - Description: {task.get('description') or 'N/A'}\n"
            f"   - Period: {task['createdAt']} to {task['dueDate']}\n"
            f"   - Assignee: {task.get('assignee') or 'Unassigned'}"
        )
    candidates = "\n".join(lines)
    return f"""You are analyzing expense receipt matching results.

Receipt Details:
- Merchant: {receipt.merchant}
- Amount: ${receipt.total}
- Date: {receipt.date}
- Category: {receipt.category}

Top Matching Tasks:
{candidates}

Pick the best matching task. Respond with JSON:
{{"bestTaskId": "task-XX", "confidence": 85, "reasoning": "Brief explanation..."}}"""


def _require_candidates(ctx: PipelineContext) -> "Mapping[str, Any] | Outcome":
    if not ctx[RANKED_TASKS]:
        return Success(
            payload={
                "reasoning": "No tasks match the receipt on description, date range and budget.",
                "match": None,
            }
        )
    return {}


def match_payload(ctx: PipelineContext) -> dict[str, Any]:
    receipt = ctx[RECEIPT]
    analysis = ctx[ANALYSIS]
    best = next((t for t in ctx[RANKED_TASKS] if t["id"] == analysis.best_task_id), None)
    if best is None:
        return {"reasoning": analysis.reasoning or "Could not determine best match", "match": None}

    return {
        "reasoning": analysis.reasoning,
        "match": {
            "taskId": best["id"],
            "title": best["title"],
            "description": best.get("description"),
            "assignee": best.get("assignee"),
            "budget": best["budget"],
            "createdAt": best["createdAt"],
            "dueDate": best["dueDate"],
            "confidenceScore": analysis.confidence,
            "matchReasons": [
                f'Semantic match: receipt matches task "{best["title"]}"',
                f"Budget fit: ${receipt.total:.2f} of ${best['budget']:.2f} "
                f"({best['utilizationPercentage']}% utilization)",
                "Date match: receipt date falls within task work period",
            ],
        },
    }


def build_match_pipeline(
    completion: TextCompletion,
    task_index: EmbedAndSearch,
    *,
    k: int = 10,
    timeout: float | None = None,
) -> Pipeline:
    def _rule(
        name: str,
        fn: Callable[[ReceiptData, list[dict[str, Any]]], list[dict[str, Any]]],
        source: ContextKey,
        target: ContextKey,
    ) -> Step:
        return rule_step(
            name,
            lambda ctx: {str(target): fn(ctx[RECEIPT], ctx[source])},
            requires=(RECEIPT, source),
            provides=(target,),
        )

    steps = [
        retrieval_step(
            task_index,
            lambda ctx: task_search_query(ctx[RECEIPT], ctx.get(NOTES)),
            name="semantic_search",
            k=k,
            transform=lambda hit: dict(hit.metadata),
            key=SEMANTIC_MATCHES,
            timeout=timeout,
            requires=(RECEIPT,),
        ),
        _rule("date_filter", filter_by_date, SEMANTIC_MATCHES, DATE_FILTERED),
        _rule("budget_rank", rank_by_budget, DATE_FILTERED, RANKED_TASKS),
        guard_step("require_candidates", _require_candidates, requires=(RANKED_TASKS,)),
        generation_step(
            "analyze_match",
            completion,
            build_match_prompt,
            MatchAnalysis,
            ANALYSIS,
            timeout=timeout,
            requires=(RECEIPT, RANKED_TASKS),
        ),
    ]
    return Pipeline("receipt_match", steps, inputs=(RECEIPT,), result=match_payload)
