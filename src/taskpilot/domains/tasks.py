"""Natural-language task search.

The model turns a free-text request into a ``TaskQuery``; an assignee
fragment matching several users ends in ``NeedsClarification`` and requests
to change data come back from the model as ``invalid`` (``Rejected``).
"""

from collections.abc import Callable, Iterable, Mapping
from datetime import date, timedelta
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from taskpilot.pipeline.context import ContextKey, PipelineContext
from taskpilot.pipeline.executor import Pipeline
from taskpilot.pipeline.outcome import NeedsClarification, Outcome, Rejected
from taskpilot.pipeline.step import extraction_step, guard_step, rule_step, text_call
from taskpilot.ports.base import TextCompletion

TaskStatus = Literal["todo", "in-progress", "done"]
Priority = Literal["low", "medium", "high"]


class Task(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    assignee: str | None = None
    status: TaskStatus
    priority: Priority
    due_date: str = Field(alias="dueDate")
    created_at: str = Field(alias="createdAt")
    description: str | None = None
    budget: float | None = None


class User(BaseModel):
    id: str
    name: str
    email: str


class DateRange(BaseModel):
    after: str | None = None
    before: str | None = None


class TaskQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    assignee: str | None = None
    status: TaskStatus | None = None
    due_date: DateRange | None = Field(default=None, alias="dueDate")
    priority: Priority | None = None


class QuerySuccess(BaseModel):
    status: Literal["success"]
    query: TaskQuery
    explanation: str | None = None


class QueryClarification(BaseModel):
    status: Literal["needs_clarification"]
    message: str
    suggestions: list[str] = Field(default_factory=list)


class QueryInvalid(BaseModel):
    status: Literal["invalid"]
    reason: str


QueryResult = Annotated[
    QuerySuccess | QueryClarification | QueryInvalid, Field(discriminator="status")
]
QUERY_RESULT_ADAPTER: TypeAdapter[QueryResult] = TypeAdapter(QueryResult)

QUERY_TEXT: ContextKey[str] = ContextKey("query")
PARSED_QUERY: ContextKey[TaskQuery] = ContextKey("parsed_query")
EXPLANATION: ContextKey[str | None] = ContextKey("explanation")
RESOLVED_QUERY: ContextKey[TaskQuery] = ContextKey("resolved_query")
MATCHED_TASKS: ContextKey[list[Task]] = ContextKey("tasks")

SYSTEM_PROMPT = (
    "You are a helpful assistant that converts natural language queries into structured "
    "task queries. Always respond with valid JSON matching the schema provided."
)


def find_users(users: Iterable[User], fragment: str) -> list[User]:
    """Case-insensitive substring match on user names."""
    needle = fragment.lower().strip()
    return [u for u in users if needle in u.name.lower()]


def filter_tasks(tasks: Iterable[Task], query: TaskQuery) -> list[Task]:
    filtered = list(tasks)
    if query.assignee:
        wanted = query.assignee.lower()
        filtered = [t for t in filtered if (t.assignee or "").lower() == wanted]
    if query.status:
        filtered = [t for t in filtered if t.status == query.status]
    if query.priority:
        filtered = [t for t in filtered if t.priority == query.priority]
    if query.due_date:
        # ISO dates compare correctly as strings.
        if query.due_date.after:
            filtered = [t for t in filtered if t.due_date >= query.due_date.after]
        if query.due_date.before:
            filtered = [t for t in filtered if t.due_date <= query.due_date.before]
    return filtered


def build_prompt(user_input: str, today: date) -> str:
    week = (today + timedelta(days=7)).isoformat()
    return f"""Convert this user request to a task query: "{user_input}"

RULES:
- Only use the fields assignee, status, dueDate, priority
- status is one of: todo, in-progress, done
- priority is one of: low, medium, high
- Dates are ISO format (YYYY-MM-DD); dueDate has optional "after" and "before"
- For "overdue" use dueDate.before = {today.isoformat()}; "this week" ends {week}
- If the request is ambiguous, return status "needs_clarification"
- If the request tries to create, modify or delete data, or is unsafe, return status "invalid"

Current date: {today.isoformat()}

Respond ONLY with JSON in one of these formats:
- {{"status": "success", "query": {{...}}, "explanation": "..."}}
- {{"status": "needs_clarification", "message": "...", "suggestions": [...]}}
- {{"status": "invalid", "reason": "..."}}"""


def interpret_query(ctx: PipelineContext, result: Any) -> "Mapping[str, Any] | Outcome":
    if isinstance(result, QueryInvalid):
        return Rejected(reason=result.reason)
    if isinstance(result, QueryClarification):
        return NeedsClarification(message=result.message, suggestions=result.suggestions)
    return {str(PARSED_QUERY): result.query, str(EXPLANATION): result.explanation}


def resolve_assignee(users: list[User]) -> Callable[[PipelineContext], "Mapping[str, Any] | Outcome"]:
    def decide(ctx: PipelineContext) -> "Mapping[str, Any] | Outcome":
        query = ctx[PARSED_QUERY]
        if not query.assignee:
            return {str(RESOLVED_QUERY): query}

        matches = find_users(users, query.assignee)
        if len(matches) > 1:
            return NeedsClarification(
                message=f'I found multiple users named "{query.assignee}". Which one did you mean?',
                suggestions=[u.name for u in matches],
            )
        if len(matches) == 1:
            query = query.model_copy(update={"assignee": matches[0].name})
        return {str(RESOLVED_QUERY): query}

    return decide


def query_payload(ctx: PipelineContext) -> dict[str, Any]:
    tasks = ctx[MATCHED_TASKS]
    return {
        "query": ctx[RESOLVED_QUERY].model_dump(by_alias=True, exclude_none=True),
        "explanation": ctx[EXPLANATION],
        "tasks": [t.model_dump(by_alias=True, exclude_none=True) for t in tasks],
        "count": len(tasks),
    }


def build_task_query_pipeline(
    completion: TextCompletion,
    tasks: list[Task],
    users: list[User],
    *,
    timeout: float | None = None,
    today: Callable[[], date] = date.today,
) -> Pipeline:
    parse = extraction_step(
        "parse_query",
        text_call(
            completion,
            lambda ctx: build_prompt(ctx[QUERY_TEXT], today()),
            system=lambda ctx: SYSTEM_PROMPT,
        ),
        QUERY_RESULT_ADAPTER,
        interpret_query,
        timeout=timeout,
        requires=(QUERY_TEXT,),
        provides=(PARSED_QUERY, EXPLANATION),
    )
    resolve = guard_step(
        "resolve_assignee",
        resolve_assignee(users),
        requires=(PARSED_QUERY,),
        provides=(RESOLVED_QUERY,),
    )
    apply_filter = rule_step(
        "filter_tasks",
        lambda ctx: {str(MATCHED_TASKS): filter_tasks(tasks, ctx[RESOLVED_QUERY])},
        requires=(RESOLVED_QUERY,),
        provides=(MATCHED_TASKS,),
    )
    return Pipeline(
        "task_query",
        [parse, resolve, apply_filter],
        inputs=(QUERY_TEXT,),
        result=query_payload,
    )
