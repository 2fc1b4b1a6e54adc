import datetime
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger

from config import APP_VERSION, load_settings
from db import Database, MetaRepository, SessionRepository, TemplateRepository
from errors import InvalidStateError, NotFoundError, StorageUnavailable, ValidationError
from session_engine import SessionEngine
from stats_service import StatisticsService, WeekPolicy


class WorkoutAPI:
    """Provides REST endpoints for templates, sessions and the active workout."""

    def __init__(
        self,
        db_path: str | None = None,
        yaml_path: str = "settings.yaml",
        *,
        rest_timer: bool = True,
    ) -> None:
        self.settings = load_settings(yaml_path)
        self.db = Database(db_path or self.settings.db_path)
        self.templates = TemplateRepository(self.db)
        self.sessions = SessionRepository(self.db)
        self.meta = MetaRepository(self.db)
        self.statistics = StatisticsService(
            WeekPolicy(self.settings.week_start, self.settings.timezone)
        )
        self.engine = SessionEngine(
            self.sessions,
            auto_timer=rest_timer,
            on_rest_end=self._on_rest_end,
        )
        self.rest_cues = 0
        self.app = FastAPI(
            title="Pull-up Tracker API",
            description="REST API for repeated-exercise workout sessions",
            version=APP_VERSION,
            lifespan=self._lifespan,
            dependencies=[Depends(self._check_api_key)],
        )
        self._setup_error_handlers()
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.db.open()
        await self.templates.ensure_default_template()
        try:
            yield
        finally:
            self.engine.detach()
            await self.db.close()

    def _check_api_key(self, x_api_key: Optional[str] = Header(None)) -> None:
        token = self.settings.api_token
        if token and x_api_key != token:
            raise HTTPException(status_code=401, detail="invalid api key")

    def _on_rest_end(self, set_index: int) -> None:
        self.rest_cues += 1
        logger.info("Rest over, set {} is up", set_index + 1)

    def _setup_error_handlers(self) -> None:
        statuses = {
            NotFoundError: 404,
            ValidationError: 400,
            InvalidStateError: 409,
            StorageUnavailable: 503,
        }

        def handler_for(status: int):
            async def handle(request: Request, exc: Exception) -> JSONResponse:
                if status >= 500:
                    logger.error("{} {} failed: {}", request.method, request.url.path, exc)
                return JSONResponse(status_code=status, content={"detail": str(exc)})

            return handle

        for exc_type, status in statuses.items():
            self.app.add_exception_handler(exc_type, handler_for(status))

    def _setup_routes(self) -> None:
        @self.app.get("/health")
        async def health():
            return {
                "status": "ok",
                "version": APP_VERSION,
                "schema_version": await self.meta.get("schema_version"),
            }

        @self.app.get("/templates")
        async def list_templates():
            return await self.templates.list()

        @self.app.post("/templates")
        async def create_template(
            name: str,
            sets: int | None = None,
            target_total: int | None = None,
            rest_sec: int | None = None,
        ):
            return await self.templates.create(
                name,
                sets if sets is not None else self.settings.default_sets,
                target_total
                if target_total is not None
                else self.settings.default_target_total,
                rest_sec if rest_sec is not None else self.settings.default_rest_sec,
            )

        @self.app.post("/templates/defaults")
        async def seed_templates():
            first_id = await self.templates.ensure_default_template()
            return {"first_id": first_id}

        @self.app.get("/templates/{template_id}")
        async def get_template(template_id: str):
            template = await self.templates.get(template_id)
            if template is None:
                raise NotFoundError(f"template {template_id} not found")
            return template

        @self.app.put("/templates/{template_id}")
        async def update_template(
            template_id: str,
            name: str | None = None,
            sets: int | None = None,
            target_total: int | None = None,
            rest_sec: int | None = None,
        ):
            fields = {
                "name": name,
                "sets": sets,
                "target_total": target_total,
                "rest_sec": rest_sec,
            }
            return await self.templates.update(
                template_id, **{k: v for k, v in fields.items() if v is not None}
            )

        @self.app.delete("/templates/{template_id}")
        async def delete_template(template_id: str):
            await self.templates.delete(template_id)
            return {"status": "deleted"}

        @self.app.get("/templates/{template_id}/last_session")
        async def last_session(template_id: str):
            session = await self.sessions.last_for_template(template_id)
            if session is None:
                raise NotFoundError(f"no sessions for template {template_id}")
            return session

        @self.app.post("/sessions")
        async def create_session(
            template_id: str, sets: int | None = None, rest_sec: int | None = None
        ):
            overrides = {}
            if sets is not None:
                overrides["sets"] = sets
            if rest_sec is not None:
                overrides["rest_sec"] = rest_sec
            return await self.sessions.create(template_id, overrides or None)

        @self.app.get("/sessions")
        async def list_sessions(limit: int | None = None):
            return await self.sessions.list_all(limit)

        @self.app.get("/sessions/{session_id}")
        async def get_session(session_id: str):
            session = await self.sessions.get(session_id)
            if session is None:
                raise NotFoundError(f"session {session_id} not found")
            return session

        @self.app.put("/sessions/{session_id}")
        async def update_session(session_id: str, patch: dict = Body(...)):
            return await self.sessions.update(session_id, **patch)

        @self.app.delete("/sessions/{session_id}")
        async def delete_session(session_id: str):
            if self.engine.session is not None and self.engine.session.id == session_id:
                self.engine.detach()
            await self.sessions.delete(session_id)
            return {"status": "deleted"}

        @self.app.post("/workout/attach")
        async def attach_workout(session_id: str):
            await self.engine.attach(session_id)
            return self.engine.snapshot()

        @self.app.get("/workout")
        async def workout_state():
            return self.engine.snapshot()

        @self.app.post("/workout/sets")
        async def record_set(reps: int):
            await self.engine.record_set(reps)
            return self.engine.snapshot()

        @self.app.post("/workout/undo")
        async def undo_set():
            await self.engine.undo()
            return self.engine.snapshot()

        @self.app.post("/workout/finish")
        async def finish_workout():
            await self.engine.finish_early()
            return self.engine.snapshot()

        @self.app.post("/workout/rest/skip")
        async def skip_rest():
            self.engine.skip_rest()
            return self.engine.snapshot()

        @self.app.post("/workout/rest/adjust")
        async def adjust_rest(delta: int | None = None):
            step = delta if delta is not None else self.settings.rest_adjust_step
            self.engine.adjust_rest(step)
            return self.engine.snapshot()

        @self.app.post("/workout/detach")
        async def detach_workout():
            self.engine.detach()
            return self.engine.snapshot()

        @self.app.get("/stats/weekly")
        async def weekly_stats(weeks: int | None = None):
            sessions = await self.sessions.list_all()
            return self.statistics.weekly_summary(
                sessions,
                weeks if weeks is not None else self.settings.weekly_summary_weeks,
            )

        @self.app.get("/stats/templates/{template_id}/series")
        async def template_series(template_id: str):
            sessions = await self.sessions.list_for_template(template_id)
            return self.statistics.exercise_series(sessions)

        @self.app.get("/stats/calendar")
        async def calendar(day: str | None = None):
            sessions = await self.sessions.list_all()
            if day is None:
                return {"days": self.statistics.active_days(sessions)}
            try:
                date = datetime.date.fromisoformat(day)
            except ValueError as e:
                raise ValidationError(f"invalid date {day!r}") from e
            return {"day": day, "sessions": self.statistics.sessions_on(sessions, date)}
