"""Personalized task digest emails.

Four steps build the email: the model summarizes the shared task activity,
comments mentioning the recipient are retrieved from the comment index, a
fixed table picks the writing style for the recipient's persona, and the
model writes the email from everything gathered so far. A last step resolves
the email's [MEME_N] markers into generated images or their text fallbacks.
"""

import asyncio
import json
import re
from typing import Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field

from taskpilot.pipeline.context import ContextKey, PipelineContext
from taskpilot.pipeline.executor import Pipeline
from taskpilot.pipeline.step import (
    RETRIEVED_CONTEXT,
    Step,
    completion_step,
    generation_step,
    lookup_step,
    retrieval_step,
    text_call,
)
from taskpilot.ports.base import EmbedAndSearch, ImageGeneration, SearchHit, TextCompletion, with_timeout

log = structlog.get_logger()

UserType = Literal["detail-oriented", "action-focused", "inactive", "meme-loving"]
Tone = Literal["professional", "direct", "encouraging", "casual", "humorous"]


class UserPreferences(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    detail_level: Literal["low", "medium", "high"] = Field(alias="detailLevel")
    preferred_tone: Literal["professional", "direct", "encouraging", "humorous"] = Field(alias="preferredTone")
    email_frequency: Literal["daily", "weekly", "only-when-needed"] = Field(alias="emailFrequency")
    include_memes: bool | None = Field(default=None, alias="includeMemes")


class UserProfile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    email: str
    user_type: UserType = Field(alias="userType")
    preferences: UserPreferences
    description: str
    last_active: str | None = Field(default=None, alias="lastActive")


class TaskActivity(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    assigned: int
    in_progress: int = Field(alias="inProgress")
    completed: int
    overdue: int
    commented: int
    created: int
    last_active: str = Field(alias="lastActive")
    date_range: str = Field(alias="dateRange")


class ActivityReport(BaseModel):
    """Task activity shared by every digest recipient."""

    model_config = ConfigDict(populate_by_name=True)

    task_activity: TaskActivity = Field(alias="taskActivity")
    recent_activity: list[dict[str, Any]] = Field(default_factory=list, alias="recentActivity")
    overdue_tasks: list[dict[str, Any]] = Field(default_factory=list, alias="overdueTasks")
    in_progress_tasks: list[dict[str, Any]] = Field(default_factory=list, alias="inProgressTasks")


class EmailStyle(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    structure: Literal["comprehensive", "minimal", "motivational", "humorous"]
    tone: Literal["professional", "direct", "encouraging", "casual"]
    include_stats: bool | None = Field(default=None, alias="includeStats")
    include_breakdowns: bool | None = Field(default=None, alias="includeBreakdowns")
    bullet_points_only: bool | None = Field(default=None, alias="bulletPointsOnly")
    emphasize_team_needs: bool | None = Field(default=None, alias="emphasizeTeamNeeds")
    include_reengagement_options: bool | None = Field(default=None, alias="includeReengagementOptions")
    include_references: bool | None = Field(default=None, alias="includeReferences")
    include_memes: bool | None = Field(default=None, alias="includeMemes")


class MemeSpot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    generation_prompt: str = Field(alias="generationPrompt")
    alt_text: str = Field(alias="altText")
    text_fallback: str = Field(alias="textFallback")


class Email(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: str
    body: str
    format: Literal["text", "html"]
    tone: Tone
    priority_actions: list[str] | None = Field(default=None, alias="priorityActions")
    meme_spots: list[MemeSpot] | None = Field(default=None, alias="memeSpots")


STYLE_BY_USER_TYPE: dict[str, EmailStyle] = {
    "detail-oriented": EmailStyle(
        structure="comprehensive", tone="professional", include_stats=True, include_breakdowns=True
    ),
    "action-focused": EmailStyle(
        structure="minimal", tone="direct", include_stats=False, bullet_points_only=True
    ),
    "inactive": EmailStyle(
        structure="motivational",
        tone="encouraging",
        emphasize_team_needs=True,
        include_reengagement_options=True,
    ),
    "meme-loving": EmailStyle(
        structure="humorous", tone="casual", include_references=True, include_memes=False
    ),
}
DEFAULT_USER_TYPE = "action-focused"

USER: ContextKey[UserProfile] = ContextKey("user")
USER_TYPE: ContextKey[str] = ContextKey("user_type")
ACTIVITY: ContextKey[ActivityReport] = ContextKey("activity")
ACTIVITY_ANALYSIS: ContextKey[str] = ContextKey("activity_analysis")
STYLE: ContextKey[EmailStyle] = ContextKey("style")
EMAIL: ContextKey[Email] = ContextKey("email")
EMAIL_DEGRADED: ContextKey[bool] = ContextKey("email_degraded")
DELIVERED_EMAIL: ContextKey[Email] = ContextKey("delivered_email")
MEMES_GENERATED: ContextKey[int] = ContextKey("memes_generated")

MEME_MARKER = re.compile(r"\[MEME_(\d+)\]")

ANALYZE_SYSTEM_PROMPT = (
    "You are a productivity analyst. Identify what matters most in a team's task "
    "activity: urgent overdue items, active discussions, progress highlights and "
    "overall workload. Answer in short plain-text bullet points."
)


def digest_context(user: UserProfile, activity: ActivityReport) -> dict[str, Any]:
    return {str(USER): user, str(USER_TYPE): user.user_type, str(ACTIVITY): activity}


def _dump(items: list[dict[str, Any]]) -> str:
    return json.dumps(items, indent=2) if items else "None"


def build_analysis_prompt(ctx: PipelineContext) -> str:
    activity = ctx[ACTIVITY]
    stats = activity.task_activity
    return f"""Analyze this task activity ({stats.date_range}):

- Assigned: {stats.assigned}, in progress: {stats.in_progress}, completed: {stats.completed}
- Overdue: {stats.overdue}, commented: {stats.commented}, created: {stats.created}
- Last active: {stats.last_active}

Recent activity:
{_dump(activity.recent_activity)}

Overdue tasks:
{_dump(activity.overdue_tasks)}

In-progress tasks:
{_dump(activity.in_progress_tasks)}"""


def comment_query(ctx: PipelineContext) -> str:
    return f"Important discussions and decisions requiring {ctx[USER].name}'s input"


def mentions_user(ctx: PipelineContext, hit: SearchHit) -> bool:
    """Keep comments whose ``mentions`` metadata names the recipient."""
    name = ctx[USER].name.lower()
    wanted = {name, name.split()[0]}
    return any(str(m).lower() in wanted for m in hit.metadata.get("mentions") or [])


def apply_preferences(ctx: PipelineContext, style: EmailStyle) -> EmailStyle:
    preference = ctx[USER].preferences.include_memes
    if preference is None:
        return style
    return style.model_copy(update={"include_memes": preference})


def build_email_system_prompt(ctx: PipelineContext) -> str:
    user = ctx[USER]
    return (
        f"You write short personalized task digest emails for {user.name}, "
        f"a {user.user_type} team member: {user.description}. "
        "Respond ONLY with JSON with keys subject, body, format (text or html), "
        "tone (professional, direct, casual, humorous, encouraging), optional "
        "priorityActions (list of strings) and optional memeSpots (list of objects "
        "with generationPrompt, altText, textFallback; mark their position in the body "
        "with [MEME_1], [MEME_2], ...)."
    )


def build_email_prompt(ctx: PipelineContext) -> str:
    style = ctx[STYLE]
    comments = ctx[RETRIEVED_CONTEXT]
    collaboration = "\n".join(f"- {c}" for c in comments) if comments else "None"
    return f"""Write the digest email for {ctx[USER].name}.

Activity analysis:
{ctx[ACTIVITY_ANALYSIS]}

Discussions that mention {ctx[USER].name}:
{collaboration}

Style directives:
{style.model_dump_json(by_alias=True, exclude_none=True)}"""


def fallback_email(ctx: PipelineContext, raw_text: str) -> Email:
    return Email(
        subject=f"Task Summary for {ctx[USER].name}",
        body=raw_text,
        format="text",
        tone=ctx[STYLE].tone,
    )


def digest_payload(ctx: PipelineContext) -> dict[str, Any]:
    user = ctx[USER]
    return {
        "user": {"id": user.id, "name": user.name, "userType": user.user_type},
        "email": ctx[DELIVERED_EMAIL].model_dump(by_alias=True, exclude_none=True),
        "style": ctx[STYLE].model_dump(by_alias=True, exclude_none=True),
        "degraded": ctx[EMAIL_DEGRADED],
        "commentsUsed": len(ctx[RETRIEVED_CONTEXT]),
        "memesGenerated": ctx[MEMES_GENERATED],
    }


async def _render_spot(
    images: ImageGeneration | None, spot: MemeSpot, position: int, timeout: float | None
) -> str | None:
    """Image line for one spot, or None when the text fallback should be used."""
    if images is None:
        return None
    try:
        url = await with_timeout(images.generate_image(spot.generation_prompt), timeout, "image_generation")
    except Exception as e:
        log.warning("meme_fallback", position=position, error=f"{type(e).__name__}: {e}")
        return None
    return f"[{spot.alt_text}]({url})"


def meme_step(images: ImageGeneration | None, *, timeout: float | None = None) -> Step:
    """Replace each [MEME_N] marker with the image for spot N.

    Images are requested only when the style asks for memes and the email has
    spots; the calls run concurrently and a failed or expired call keeps the
    spot's text fallback. Markers without a matching spot are removed.
    """

    async def run(ctx: PipelineContext) -> PipelineContext:
        email = ctx[EMAIL]
        spots = email.meme_spots or []
        wanted = bool(ctx[STYLE].include_memes) and bool(spots)

        rendered: list[str | None] = [None] * len(spots)
        if wanted:
            rendered = list(
                await asyncio.gather(
                    *(_render_spot(images, spot, i, timeout) for i, spot in enumerate(spots, start=1))
                )
            )

        def replace(match: re.Match[str]) -> str:
            index = int(match.group(1)) - 1
            if not wanted or not 0 <= index < len(spots):
                return ""
            return rendered[index] or spots[index].text_fallback

        body = MEME_MARKER.sub(replace, email.body)
        generated = sum(1 for r in rendered if r is not None)
        if wanted:
            log.info("memes_resolved", spots=len(spots), generated=generated, fallbacks=len(spots) - generated)
        delivered = email if body == email.body else email.model_copy(update={"body": body})
        return ctx.extend("generate_memes", **{str(DELIVERED_EMAIL): delivered, str(MEMES_GENERATED): generated})

    return Step(
        name="generate_memes",
        run=run,
        requires=frozenset({str(EMAIL), str(STYLE)}),
        provides=frozenset({str(DELIVERED_EMAIL), str(MEMES_GENERATED)}),
    )


def build_digest_pipeline(
    completion: TextCompletion,
    comment_index: EmbedAndSearch,
    *,
    images: ImageGeneration | None = None,
    k: int = 20,
    limit: int = 5,
    allow_fallback: bool = True,
    meme_timeout: float | None = None,
    timeout: float | None = None,
) -> Pipeline:
    steps = [
        completion_step(
            "analyze_activity",
            text_call(
                completion,
                build_analysis_prompt,
                system=lambda ctx: ANALYZE_SYSTEM_PROMPT,
                json_mode=False,
            ),
            ACTIVITY_ANALYSIS,
            timeout=timeout,
            requires=(ACTIVITY,),
        ),
        retrieval_step(
            comment_index,
            comment_query,
            name="relevant_comments",
            k=k,
            where=mentions_user,
            limit=limit,
            timeout=timeout,
            requires=(USER,),
        ),
        lookup_step(
            "determine_style",
            USER_TYPE,
            STYLE_BY_USER_TYPE,
            STYLE,
            default=STYLE_BY_USER_TYPE[DEFAULT_USER_TYPE],
            refine=apply_preferences,
        ),
        generation_step(
            "generate_email",
            completion,
            build_email_prompt,
            Email,
            EMAIL,
            system=build_email_system_prompt,
            fallback=fallback_email if allow_fallback else None,
            timeout=timeout,
            requires=(USER, ACTIVITY_ANALYSIS, RETRIEVED_CONTEXT, STYLE),
        ),
        meme_step(images, timeout=meme_timeout),
    ]
    return Pipeline(
        "digest_email",
        steps,
        inputs=(USER, USER_TYPE, ACTIVITY),
        result=digest_payload,
    )
