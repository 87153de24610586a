import json

import pytest

from taskpilot.domains.receipts import (
    ReceiptData,
    build_match_pipeline,
    build_receipt_pipeline,
    filter_by_date,
    normalize_receipt_response,
    rank_by_budget,
)
from taskpilot.errors import CapabilityTimeoutError
from taskpilot.pipeline.outcome import Failed, NeedsClarification, Partial, Rejected, Success
from taskpilot.ports.base import SearchHit

RECEIPT = {
    "merchant": "Bistro Verde",
    "date": "2026-10-20",
    "subtotal": 80.0,
    "tax": 6.5,
    "total": 86.5,
    "category": "food",
    "items": [{"description": "Lunch platter", "price": 80.0, "quantity": 1}],
    "paymentMethod": "card",
    "confidence": "high",
}


def _invoke_parse(vision, answer):
    vision.script(answer if isinstance(answer, str) else json.dumps(answer))
    return build_receipt_pipeline(vision).invoke({"image": b"\xff\xd8\xff", "media_type": "image/jpeg"})


def _task_hits(store) -> list[SearchHit]:
    return [SearchHit(text=d.text, metadata=d.metadata) for d in store.task_documents()]


# --- Parsing ---


async def test_parse_success(vision):
    outcome = await _invoke_parse(vision, {"status": "success", "receipt": RECEIPT, "notes": "Team lunch"})

    assert isinstance(outcome, Success)
    assert outcome.payload["merchant"] == "Bistro Verde"
    assert outcome.payload["total"] == 86.5
    assert outcome.payload["notes"] == "Team lunch"
    assert vision.calls[0]["image"] == b"\xff\xd8\xff"
    assert vision.calls[0]["media_type"] == "image/jpeg"


async def test_parse_partial(vision):
    outcome = await _invoke_parse(
        vision,
        {
            "status": "partial",
            "receipt": {"merchant": "Corner Store", "total": 25.43},
            "missingFields": ["date", "tax"],
            "message": "bottom faded",
        },
    )
    assert outcome == Partial(
        payload={"merchant": "Corner Store", "total": 25.43},
        missing_fields=["date", "tax"],
        message="bottom faded",
    )


async def test_parse_not_a_receipt(vision):
    outcome = await _invoke_parse(
        vision,
        {"status": "not_a_receipt", "reason": "This is a photo of a cat.", "suggestion": "Upload a receipt."},
    )
    assert outcome == Rejected(reason="This is a photo of a cat. Upload a receipt.")


async def test_parse_unreadable(vision):
    outcome = await _invoke_parse(
        vision,
        {"status": "unreadable", "reason": "The image is too blurry.", "suggestions": ["Retake in better light"]},
    )
    assert outcome == NeedsClarification(
        message="The image is too blurry.", suggestions=["Retake in better light"]
    )


async def test_parse_missing_required_field_fails(vision):
    receipt = {k: v for k, v in RECEIPT.items() if k != "total"}
    outcome = await _invoke_parse(vision, {"status": "success", "receipt": receipt})
    assert isinstance(outcome, Failed)
    assert outcome.category == "malformed_response"


async def test_parse_timeout_fails(vision):
    vision.script(CapabilityTimeoutError("vision_completion", 60.0))
    outcome = await build_receipt_pipeline(vision).invoke({"image": b"x", "media_type": "image/png"})
    assert isinstance(outcome, Failed)
    assert outcome.category == "capability_unreachable"


async def test_parse_accepts_alternate_shapes(vision):
    outcome = await _invoke_parse(
        vision,
        {
            "status": "Success",
            "receipt": {
                "merchant": {"name": "Office Hub"},
                "date": "2026-10-05",
                "tax": "$1.20",
                "total": "$13.70",
                "category": "Office",
                "payment_method": "cash",
                "items": [{"description": "Pens", "price": "12.50"}],
            },
        },
    )
    assert outcome.payload["merchant"] == "Office Hub"
    assert outcome.payload["total"] == 13.7
    assert outcome.payload["category"] == "office"
    assert outcome.payload["paymentMethod"] == "cash"
    assert outcome.payload["items"] == [{"description": "Pens", "price": 12.5}]


def test_normalizer_maps_variants():
    data = normalize_receipt_response(
        {
            "status": "Not-A-Receipt",
            "missing_fields": ["date"],
            "receipt": {"category": "Groceries", "subtotal": "1,024.50"},
        }
    )
    assert data["status"] == "not_a_receipt"
    assert data["missingFields"] == ["date"]
    assert data["receipt"]["category"] == "other"
    assert data["receipt"]["subtotal"] == 1024.5


def test_normalizer_leaves_non_objects_alone():
    assert normalize_receipt_response(["a"]) == ["a"]


# --- Matching ---


def test_filter_by_date_uses_work_period(store):
    receipt = ReceiptData.model_validate({**RECEIPT, "date": "2026-10-12"})
    tasks = [d.metadata for d in store.task_documents()]
    assert {t["id"] for t in filter_by_date(receipt, tasks)} == {"task-7", "task-8", "task-9"}


def test_rank_by_budget_prefers_tightest_fit(store):
    receipt = ReceiptData.model_validate(RECEIPT)
    ranked = rank_by_budget(receipt, [d.metadata for d in store.task_documents()])
    assert [t["id"] for t in ranked] == ["task-9", "task-7", "task-8", "task-10"]
    assert ranked[2]["remaining"] == 313.5


async def test_match_picks_analyzed_task(completion, task_index, store):
    task_index.hits = _task_hits(store)
    completion.script(json.dumps({"bestTaskId": "task-8", "confidence": 90, "reasoning": "Lunch for the offsite"}))

    pipeline = build_match_pipeline(completion, task_index)
    outcome = await pipeline.invoke({"receipt": ReceiptData.model_validate(RECEIPT)})

    assert isinstance(outcome, Success)
    match = outcome.payload["match"]
    assert match["taskId"] == "task-8"
    assert match["confidenceScore"] == 90
    assert len(match["matchReasons"]) == 3
    assert outcome.payload["reasoning"] == "Lunch for the offsite"
    assert task_index.queries == [("Bistro Verde food", 10)]
    assert "Team offsite lunch" in completion.calls[0]["prompt"]


async def test_match_with_unknown_task_id(completion, task_index, store):
    task_index.hits = _task_hits(store)
    completion.script(json.dumps({"bestTaskId": "task-99", "confidence": 10, "reasoning": "Unsure"}))
    outcome = await build_match_pipeline(completion, task_index).invoke(
        {"receipt": ReceiptData.model_validate(RECEIPT)}
    )
    assert outcome.payload == {"reasoning": "Unsure", "match": None}


async def test_match_over_budget_skips_analysis(completion, task_index, store):
    task_index.hits = _task_hits(store)
    receipt = ReceiptData.model_validate({**RECEIPT, "total": 5000.0})
    outcome = await build_match_pipeline(completion, task_index).invoke({"receipt": receipt})

    assert isinstance(outcome, Success)
    assert outcome.payload["match"] is None
    assert completion.calls == []


async def test_match_search_failure_degrades_to_no_match(completion, task_index):
    task_index.error = RuntimeError("index offline")
    outcome = await build_match_pipeline(completion, task_index).invoke(
        {"receipt": ReceiptData.model_validate(RECEIPT)}
    )
    assert outcome.status == "success"
    assert outcome.payload["match"] is None


@pytest.mark.parametrize("answer", ["no idea", '{"bestTaskId": "task-8", "confidence": 250}'])
async def test_match_bad_analysis_fails(completion, task_index, store, answer):
    task_index.hits = _task_hits(store)
    completion.script(answer)
    outcome = await build_match_pipeline(completion, task_index).invoke(
        {"receipt": ReceiptData.model_validate(RECEIPT)}
    )
    assert isinstance(outcome, Failed)
    assert outcome.category == "malformed_response"
