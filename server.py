import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from core import Settings, load_settings
from errors import ErrorKind, Result
from models import Response, Schedule, Summary
from service import Components, build_components

logger = logging.getLogger(__name__)

HTTP_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.TRANSIENT: 503,
}


class DateView(BaseModel):
    id: str
    datetime: str
    display_order: int


class ScheduleView(BaseModel):
    id: str
    guild_id: str
    channel_id: str
    message_id: Optional[str]
    title: str
    description: Optional[str]
    author_id: str
    author_name: str
    dates: List[DateView]
    deadline: Optional[datetime]
    reminder_timings: List[str]
    reminders_sent: List[str]
    status: str
    total_responses: int


class ResponseView(BaseModel):
    user_id: str
    username: str
    display_name: Optional[str]
    date_statuses: Dict[str, str]
    updated_at: Optional[datetime]


class CountsView(BaseModel):
    yes: int
    maybe: int
    no: int


class ParticipationView(BaseModel):
    fully_available: int
    partially_available: int
    unavailable: int


class SummaryView(BaseModel):
    schedule: ScheduleView
    response_counts: Dict[str, CountsView]
    total_response_users: int
    optimal_date_id: Optional[str]
    participation: ParticipationView
    responses: List[ResponseView]


class ScheduleCreate(BaseModel):
    guild_id: str
    channel_id: str
    title: str
    dates: List[str]
    description: Optional[str] = None
    deadline: Optional[datetime] = None
    reminder_timings: Optional[List[str]] = None
    reminder_mentions: Optional[List[str]] = None


class SchedulePatch(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    dates: Optional[List[str]] = None
    deadline: Optional[datetime] = None
    reminder_timings: Optional[List[str]] = None
    reminder_mentions: Optional[List[str]] = None
    clear_deadline: bool = False


class ResponseForm(BaseModel):
    date_statuses: Dict[str, str]
    display_name: Optional[str] = None


class DateStatusForm(BaseModel):
    status: str
    display_name: Optional[str] = None


def schedule_view(schedule: Schedule) -> ScheduleView:
    return ScheduleView(
        id=schedule.id,
        guild_id=schedule.guild_id,
        channel_id=schedule.channel_id,
        message_id=schedule.message_id,
        title=schedule.title,
        description=schedule.description,
        author_id=schedule.author_id,
        author_name=schedule.author_name,
        dates=[DateView(id=d.id, datetime=d.datetime, display_order=d.display_order) for d in schedule.dates],
        deadline=schedule.deadline,
        reminder_timings=schedule.reminder_timings,
        reminders_sent=schedule.reminders_sent,
        status=schedule.status,
        total_responses=schedule.total_responses,
    )


def response_view(response: Response) -> ResponseView:
    return ResponseView(
        user_id=response.user_id,
        username=response.username,
        display_name=response.display_name,
        date_statuses=response.date_statuses,
        updated_at=response.updated_at,
    )


def summary_view(summary: Summary) -> SummaryView:
    p = summary.participation
    return SummaryView(
        schedule=schedule_view(summary.schedule),
        response_counts={
            date_id: CountsView(yes=c.yes, maybe=c.maybe, no=c.no) for date_id, c in summary.response_counts.items()
        },
        total_response_users=summary.total_response_users,
        optimal_date_id=summary.optimal_date_id,
        participation=ParticipationView(
            fully_available=p.fully_available,
            partially_available=p.partially_available,
            unavailable=p.unavailable,
        ),
        responses=[response_view(r) for r in summary.responses],
    )


def unwrap(result: Result) -> Any:
    if result.success:
        return result.data
    error = result.error
    raise HTTPException(
        HTTP_STATUS[error.kind],
        {"kind": error.kind.value, "message": error.message, "details": error.details},
    )


def require_user(user_id: str) -> str:
    # identity headers are set by the gateway in front of this API
    if not user_id:
        raise HTTPException(401, "Missing X-User-Id")
    return user_id


def create_app(settings: Optional[Settings] = None, components: Optional[Components] = None) -> FastAPI:
    settings = settings or load_settings()
    components = components or build_components(settings)
    service = components.service

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await components.db.init()
        logger.info("API started")
        yield

    app = FastAPI(lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    @app.post("/api/schedules", response_model=ScheduleView, status_code=201)
    async def api_create_schedule(
        form: ScheduleCreate,
        x_user_id: str = Header(default="", alias="X-User-Id"),
        x_username: str = Header(default="", alias="X-Username"),
    ):
        schedule = unwrap(
            await service.create_schedule(
                guild_id=form.guild_id,
                channel_id=form.channel_id,
                title=form.title,
                dates=form.dates,
                author_id=require_user(x_user_id),
                author_name=x_username,
                description=form.description,
                deadline=form.deadline,
                reminder_timings=form.reminder_timings,
                reminder_mentions=form.reminder_mentions,
            )
        )
        return schedule_view(schedule)

    @app.get("/api/schedule/{schedule_id}", response_model=ScheduleView)
    async def api_get_schedule(schedule_id: str, guild_id: str = Query(...)):
        return schedule_view(unwrap(await service.get_schedule(schedule_id, guild_id)))

    @app.patch("/api/schedule/{schedule_id}", response_model=ScheduleView)
    async def api_update_schedule(
        schedule_id: str,
        patch: SchedulePatch,
        guild_id: str = Query(...),
        x_user_id: str = Header(default="", alias="X-User-Id"),
    ):
        schedule = unwrap(
            await service.update_schedule(
                schedule_id,
                guild_id,
                require_user(x_user_id),
                title=patch.title,
                description=patch.description,
                dates=patch.dates,
                deadline=patch.deadline,
                reminder_timings=patch.reminder_timings,
                reminder_mentions=patch.reminder_mentions,
                clear_deadline=patch.clear_deadline,
            )
        )
        return schedule_view(schedule)

    @app.delete("/api/schedule/{schedule_id}")
    async def api_delete_schedule(
        schedule_id: str,
        guild_id: str = Query(...),
        x_user_id: str = Header(default="", alias="X-User-Id"),
    ):
        deleted = unwrap(await service.delete_schedule(schedule_id, guild_id, require_user(x_user_id)))
        return {"ok": deleted}

    @app.post("/api/schedule/{schedule_id}/close", response_model=ScheduleView)
    async def api_close_schedule(
        schedule_id: str,
        guild_id: str = Query(...),
        x_user_id: str = Header(default="", alias="X-User-Id"),
    ):
        return schedule_view(unwrap(await service.close_schedule(schedule_id, guild_id, require_user(x_user_id))))

    @app.get("/api/schedule/{schedule_id}/summary", response_model=SummaryView)
    async def api_get_summary(schedule_id: str, guild_id: str = Query(...)):
        return summary_view(unwrap(await service.get_summary(schedule_id, guild_id)))

    @app.get("/api/schedule/{schedule_id}/responses/me", response_model=Optional[ResponseView])
    async def api_get_my_response(
        schedule_id: str,
        guild_id: str = Query(...),
        x_user_id: str = Header(default="", alias="X-User-Id"),
    ):
        response = unwrap(await service.get_response(schedule_id, guild_id, require_user(x_user_id)))
        return response_view(response) if response else None

    @app.put("/api/schedule/{schedule_id}/responses", response_model=ResponseView)
    async def api_submit_response(
        schedule_id: str,
        form: ResponseForm,
        guild_id: str = Query(...),
        x_user_id: str = Header(default="", alias="X-User-Id"),
        x_username: str = Header(default="", alias="X-Username"),
    ):
        user_id = require_user(x_user_id)
        response = unwrap(
            await service.submit_response(
                schedule_id,
                guild_id,
                user_id,
                x_username or user_id,
                form.date_statuses,
                display_name=form.display_name,
            )
        )
        return response_view(response)

    @app.patch("/api/schedule/{schedule_id}/responses/{date_id}", response_model=ResponseView)
    async def api_submit_date_status(
        schedule_id: str,
        date_id: str,
        form: DateStatusForm,
        guild_id: str = Query(...),
        x_user_id: str = Header(default="", alias="X-User-Id"),
        x_username: str = Header(default="", alias="X-Username"),
    ):
        user_id = require_user(x_user_id)
        response = unwrap(
            await service.submit_date_status(
                schedule_id,
                guild_id,
                user_id,
                x_username or user_id,
                date_id,
                form.status,
                display_name=form.display_name,
            )
        )
        return response_view(response)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    logging.basicConfig(level=settings.log_level)
    uvicorn.run(app, host="0.0.0.0", port=8000)
