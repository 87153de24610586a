import dataclasses
import json

from taskpilot.errors import CapabilityUnreachableError
from taskpilot.main import app
from taskpilot.pipeline.executor import Pipeline
from taskpilot.pipeline.step import Step
from taskpilot.ports.base import SearchHit
from taskpilot.services.container import get_services

EMAIL = json.dumps({"subject": "Your tasks", "body": "Two things need you.", "format": "text", "tone": "direct"})

RECEIPT = {
    "merchant": "Bistro Verde",
    "date": "2026-10-20",
    "tax": 6.5,
    "total": 86.5,
    "category": "food",
}


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


# --- Tasks ---


async def test_list_tasks_and_users(client):
    tasks = (await client.get("/api/tasks")).json()["data"]
    users = (await client.get("/api/users")).json()["data"]
    assert len(tasks) == 10
    assert tasks[0]["dueDate"] == "2026-10-20"
    assert [u["name"] for u in users][:2] == ["Sarah Chen", "Sarah Miller"]


async def test_traditional_query(client):
    resp = await client.post("/api/query/traditional", json={"assignee": "Nick Patel", "status": "in-progress"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["count"] == 2
    assert {t["id"] for t in data["data"]} == {"task-1", "task-7"}


async def test_traditional_query_rejects_unknown_status(client):
    resp = await client.post("/api/query/traditional", json={"status": "blocked"})
    assert resp.status_code == 422


async def test_natural_query_success(client, completion):
    completion.script(json.dumps({"status": "success", "query": {"priority": "low"}, "explanation": "Low priority"}))
    resp = await client.post("/api/query/natural", json={"query": "low priority work"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "success"
    assert body["payload"]["count"] == 3


async def test_natural_query_clarification(client, completion):
    completion.script(json.dumps({"status": "success", "query": {"assignee": "sarah"}}))
    resp = await client.post("/api/query/natural", json={"query": "sarah's tasks"})

    assert resp.status_code == 200
    assert resp.json()["status"] == "needs_clarification"
    assert resp.json()["suggestions"] == ["Sarah Chen", "Sarah Miller"]


async def test_natural_query_rejected(client, completion):
    completion.script(json.dumps({"status": "invalid", "reason": "modification requests are not supported"}))
    resp = await client.post("/api/query/natural", json={"query": "delete all tasks"})
    assert resp.status_code == 422
    assert resp.json() == {"status": "rejected", "reason": "modification requests are not supported"}


async def test_natural_query_service_down(client, completion):
    completion.script(CapabilityUnreachableError("text_completion", "HTTP 401: key sk-secret"))
    resp = await client.post("/api/query/natural", json={"query": "open tasks"})

    assert resp.status_code == 502
    body = resp.json()
    assert body["status"] == "failed"
    assert body["category"] == "capability_unreachable"
    assert "sk-secret" not in resp.text


async def test_natural_query_requires_text(client):
    resp = await client.post("/api/query/natural", json={"query": ""})
    assert resp.status_code == 422


# --- Receipts ---


async def test_parse_receipt(client, vision):
    vision.script(json.dumps({"status": "success", "receipt": RECEIPT}))
    resp = await client.post("/api/receipts/parse", content=b"\x89PNG", headers={"content-type": "image/png"})

    assert resp.status_code == 200
    assert resp.json()["payload"]["merchant"] == "Bistro Verde"
    assert vision.calls[0]["media_type"] == "image/png"


async def test_parse_receipt_partial(client, vision):
    vision.script(
        json.dumps(
            {
                "status": "partial",
                "receipt": {"merchant": "Corner Store", "total": 25.43},
                "missingFields": ["date", "tax"],
                "message": "bottom faded",
            }
        )
    )
    resp = await client.post("/api/receipts/parse", content=b"\xff\xd8", headers={"content-type": "image/jpeg"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "partial"
    assert body["missing_fields"] == ["date", "tax"]


async def test_parse_receipt_unsupported_type(client, vision):
    resp = await client.post("/api/receipts/parse", content=b"%PDF", headers={"content-type": "application/pdf"})
    assert resp.status_code == 415
    assert vision.calls == []


async def test_parse_receipt_empty_body(client):
    resp = await client.post("/api/receipts/parse", content=b"", headers={"content-type": "image/png"})
    assert resp.status_code == 400


async def test_match_receipt(client, completion, task_index, store):
    task_index.hits = [SearchHit(text=d.text, metadata=d.metadata) for d in store.task_documents()]
    completion.script(json.dumps({"bestTaskId": "task-8", "confidence": 88, "reasoning": "Offsite lunch"}))
    resp = await client.post("/api/receipts/match", json=RECEIPT)

    assert resp.status_code == 200
    assert resp.json()["payload"]["match"]["taskId"] == "task-8"


# --- Digests ---


async def test_list_personas(client):
    resp = await client.get("/api/personas")
    assert [u["userType"] for u in resp.json()["users"]] == [
        "detail-oriented",
        "action-focused",
        "inactive",
        "meme-loving",
    ]


async def test_unknown_persona(client):
    resp = await client.get("/api/personas/persona-99")
    assert resp.status_code == 404
    assert resp.json()["userId"] == "persona-99"


async def test_generate_digest(client, completion):
    completion.script("- Auth bug needs a decision", EMAIL)
    resp = await client.post("/api/digests", json={"userId": "persona-2"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["payload"]["email"]["subject"] == "Your tasks"
    assert body["payload"]["user"]["name"] == "Nick Patel"


async def test_generate_digest_unknown_user(client):
    resp = await client.post("/api/digests", json={"userId": "nobody"})
    assert resp.status_code == 404


async def test_digest_batch(client, completion):
    def respond(prompt: str) -> str:
        if prompt.startswith("Analyze this task activity"):
            return "- Busy week"
        if "Emma Davis" in prompt:
            raise CapabilityUnreachableError("text_completion", "HTTP 429")
        return EMAIL

    completion.script(respond)
    resp = await client.post("/api/digests/batch")

    assert resp.status_code == 200
    body = resp.json()
    assert [r["user"]["id"] for r in body["results"]] == ["persona-1", "persona-2", "persona-3", "persona-4"]
    assert [r["outcome"]["status"] for r in body["results"]] == ["success", "success", "success", "failed"]
    assert body["metadata"]["successCount"] == 3
    assert body["metadata"]["failureCount"] == 1
    assert body["metadata"]["totalTimeMs"] >= 0


async def test_digest_stream(client, completion):
    completion.script("- Busy week", EMAIL)
    resp = await client.get("/api/digests/persona-2/stream")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = [line.removeprefix("event: ") for line in resp.text.splitlines() if line.startswith("event: ")]
    assert events == ["step_started", "step_completed"] * 5 + ["pipeline_completed", "result"]

    result = resp.text.rsplit("data: ", 1)[1]
    assert json.loads(result)["status"] == "success"


async def test_digest_stream_ends_with_result_when_pipeline_raises(client, services):
    async def overwrite_user(ctx):
        return ctx.extend("overwrite_user", user="someone else")

    broken = Pipeline("digest_email", [Step(name="overwrite_user", run=overwrite_user)])
    app.dependency_overrides[get_services] = lambda: dataclasses.replace(services, digest=broken)

    resp = await client.get("/api/digests/persona-2/stream")

    assert resp.status_code == 200
    events = [line.removeprefix("event: ") for line in resp.text.splitlines() if line.startswith("event: ")]
    assert events == ["step_started", "result"]
    result = json.loads(resp.text.rsplit("data: ", 1)[1])
    assert result["status"] == "failed"
    assert result["category"] == "internal"
