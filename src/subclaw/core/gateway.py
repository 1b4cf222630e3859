from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
import threading
import time
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from subclaw import __version__
from subclaw.core.audit import log_event
from subclaw.core.background import BackgroundJobManager
from subclaw.core.config import Settings
from subclaw.core.engine import SubAgentEngine
from subclaw.core.knowledge import DirectoryKnowledgeBase
from subclaw.core.logging_config import setup_logging
from subclaw.core.notifier import ChannelNotifier
from subclaw.core.policy import load_shell_policy
from subclaw.core.router import ChatRequest, handle_chat
from subclaw.core.store import TaskStore
from subclaw.core.tasks import Destination, KnowledgeScope
from subclaw.core.toolbox import Toolbox, background_specs
from subclaw.core.tools import ToolRegistry
from subclaw.core.watchdog import Watchdog
from subclaw.integrations.llm import ChatProvider, ProviderRouter
from subclaw.integrations.telegram import TelegramAdapter, parse_update
from subclaw.integrations.web import ImageAnalyzer, WebClient

logger = logging.getLogger("subclaw.gateway")

HOUSEKEEPING_INTERVAL = 30 * 60


# ---- request models ----

class KnowledgeRequest(BaseModel):
    query: str = ""
    collections: List[str] = Field(default_factory=list)
    max_docs: int = 5


class DestinationRequest(BaseModel):
    channel: str = ""
    target: str = ""
    reply_to: str = ""


class SpawnRequest(BaseModel):
    goal: str
    context: str = ""
    planner_model: Optional[str] = None
    executor_model: Optional[str] = None
    max_turns: Optional[int] = Field(default=None, ge=1)
    timeout: Optional[float] = Field(default=None, gt=0)
    allowed_tools: Optional[List[str]] = None
    can_ask_clarification: bool = False
    require_plan_approval: bool = False
    depends_on: Optional[str] = None
    report_every: Optional[int] = Field(default=None, ge=0)
    knowledge: Optional[KnowledgeRequest] = None
    destination: Optional[DestinationRequest] = None


class AnswerRequest(BaseModel):
    answer: str


def build_engine(settings: Settings, provider: Optional[ChatProvider] = None,
                 telegram: Optional[TelegramAdapter] = None) -> tuple[SubAgentEngine, Watchdog]:
    """Wire the engine, tool registry and watchdog from settings."""
    provider = provider or ProviderRouter(settings.providers)
    policy = load_shell_policy()
    toolbox = Toolbox(
        policy=policy,
        web=WebClient(),
        images=ImageAnalyzer(provider, settings.vision_model),
        shell_timeout=settings.shell_timeout,
    )
    background = BackgroundJobManager(
        policy=policy,
        timeout=settings.background_timeout,
        max_concurrent=settings.background_max_concurrent,
    )
    registry = ToolRegistry(toolbox.specs() + background_specs(background), output_limit=settings.tool_output_limit)
    knowledge = DirectoryKnowledgeBase(os.path.join(settings.data_dir, "knowledge"))
    notifier = ChannelNotifier(telegram=telegram, owner_chat_id=settings.telegram_owner_chat_id)
    engine = SubAgentEngine(
        provider,
        registry,
        store=TaskStore(settings.data_dir),
        notifier=notifier,
        knowledge_rag=knowledge,
        knowledge_collections=knowledge,
        data_dir=settings.data_dir,
        planner_model=settings.planner_model,
        executor_model=settings.executor_model,
        max_turns=settings.max_turns,
        timeout=settings.task_timeout,
        report_every=settings.report_every,
        clarification_timeout=settings.clarification_timeout,
        dependency_poll_interval=settings.dependency_poll_interval,
        retry_delays=settings.retry_delays,
        task_retention=settings.task_retention,
        restore_max_age=settings.restore_max_age,
    )
    watchdog = Watchdog(
        engine,
        notifier=notifier,
        interval=settings.watchdog_interval,
        stuck_after=settings.watchdog_stuck_after,
        cleanup_after=settings.watchdog_cleanup_after,
        max_respawns=settings.watchdog_max_respawns,
        data_dir=settings.data_dir,
    )
    engine.add_observer(watchdog)
    return engine, watchdog


def create_app(settings: Optional[Settings] = None, provider: Optional[ChatProvider] = None) -> FastAPI:
    # Ensure .env is loaded before anything reads os.getenv
    load_dotenv(override=False)

    settings = settings or Settings.from_env()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)
    os.makedirs(settings.data_dir, exist_ok=True)

    tg_adapter: Optional[TelegramAdapter] = (
        TelegramAdapter(settings.telegram_bot_token) if settings.telegram_bot_token else None
    )
    engine, watchdog = build_engine(settings, provider, tg_adapter)
    stop_event = threading.Event()
    boot_epoch = int(time.time())

    def _housekeeping_loop() -> None:
        while not stop_event.wait(HOUSEKEEPING_INTERVAL):
            try:
                removed = engine.cleanup()
                if removed:
                    logger.info("Housekeeping evicted %d finished sub-agents", removed)
            except Exception as exc:  # noqa: BLE001
                logger.error("Housekeeping failed: %s", exc)

    def _handle_telegram_update(update: dict) -> None:
        incoming = parse_update(update, not_before=boot_epoch)
        if incoming is None:
            return
        logger.info("Telegram poll: [%s] %s", incoming.sender_id, incoming.text[:80])
        resp = handle_chat(
            ChatRequest(
                channel="telegram",
                sender_id=incoming.sender_id,
                chat_id=str(incoming.chat_id),
                text=incoming.text,
                message_id=incoming.message_id,
            ),
            engine=engine,
            watchdog=watchdog,
            allow_from=settings.telegram_allow_from,
            owner_id=settings.telegram_owner_chat_id,
            data_dir=settings.data_dir,
        )
        if resp.status != "ignored" and tg_adapter is not None:
            tg_adapter.send_message(incoming.chat_id, resp.text)

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        watchdog.start()
        housekeeping = threading.Thread(target=_housekeeping_loop, daemon=True, name="subagent-housekeeping")
        housekeeping.start()
        if tg_adapter is not None:
            tg_adapter.start_polling(on_update=_handle_telegram_update)
            logger.info("Telegram polling started")
        log_event(settings.data_dir, "gateway.start", {"version": __version__})

        yield

        # Shutdown
        stop_event.set()
        watchdog.stop()
        if tg_adapter is not None:
            tg_adapter.stop()

    app = FastAPI(title="subclaw", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.watchdog = watchdog

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/control/status")
    def control_status() -> dict:
        rows = engine.list_all()
        by_status: dict[str, int] = {}
        for row in rows:
            by_status[row["status"]] = by_status.get(row["status"], 0) + 1
        return {
            "version": __version__,
            "tasks_total": len(rows),
            "tasks_by_status": by_status,
            "watchdog_tracked": len(watchdog.get_status()),
            "telegram": "configured" if settings.telegram_bot_token else "missing",
        }

    # ---- sub-agents ----

    @app.post("/subagents")
    def spawn_subagent(req: SpawnRequest) -> dict:
        try:
            task_id = engine.spawn(
                req.goal,
                context=req.context,
                planner_model=req.planner_model,
                executor_model=req.executor_model,
                max_turns=req.max_turns,
                timeout=req.timeout,
                allowed_tools=req.allowed_tools,
                can_ask_clarification=req.can_ask_clarification,
                require_plan_approval=req.require_plan_approval,
                depends_on=req.depends_on,
                report_every=req.report_every,
                knowledge=KnowledgeScope(**req.knowledge.model_dump()) if req.knowledge else None,
                destination=Destination(**req.destination.model_dump()) if req.destination else None,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"task_id": task_id}

    @app.get("/subagents")
    def list_subagents() -> dict:
        return {"tasks": engine.list_all()}

    @app.get("/subagents/{task_id}")
    def subagent_status(task_id: str) -> dict:
        snap = engine.get_status(task_id)
        if snap is None:
            raise HTTPException(status_code=404, detail="task not found")
        return snap

    @app.post("/subagents/abort-all")
    def abort_all() -> dict:
        return {"aborted": engine.abort_all()}

    @app.post("/subagents/{task_id}/answer")
    def answer(task_id: str, req: AnswerRequest) -> dict:
        if engine.get_status(task_id) is None:
            raise HTTPException(status_code=404, detail="task not found")
        return {"delivered": engine.answer_clarification(task_id, req.answer)}

    @app.post("/subagents/{task_id}/abort")
    def abort(task_id: str) -> dict:
        if engine.get_status(task_id) is None:
            raise HTTPException(status_code=404, detail="task not found")
        return {"aborted": engine.abort(task_id)}

    @app.delete("/subagents")
    def clear_all() -> dict:
        return {"cleared": engine.clear_all()}

    @app.get("/watchdog")
    def watchdog_status() -> dict:
        return {"entries": watchdog.get_status()}

    return app
