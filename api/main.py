"""
FastAPI Application — channel webhooks + operator endpoints.

Provides:
- Instagram webhook verification and delivery, Gmail push delivery
- Outbound queue inspection, manual retry and stats
- Global agent configuration read/update
- Per-conversation operator actions (milestone, counter reset, reminder sent)
- Health of the store, workers and channel senders

Webhooks always answer 200 once the body is parsed: ingestion is
idempotent, so upstream redeliveries are harmless, while a non-2xx makes
providers back off or disable the subscription.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from channels.instagram_adapter import InstagramSender
from core.errors import ItemNotFoundError, QueueInvariantError
from core.lead_scoring import mark_reminder_sent
from core.milestones import set_milestone
from core.runtime import AgentRuntime, build_runtime
from models.schemas import (
    ChannelType, GlobalAgentConfig, MilestoneSetting, OutboundItem, OutboundStatus, utcnow,
)
from rules.config_provider import StoreAgentConfigProvider

logger = structlog.get_logger()


def create_app(runtime: Optional[AgentRuntime] = None) -> FastAPI:
    """Build the app around a runtime; by default one is built from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = app.state.runtime or build_runtime()
        app.state.runtime = rt
        await rt.start()
        yield
        await rt.stop()

    app = FastAPI(
        title="InboxAgent API",
        description="Batched, rule-gated automated replies for Instagram DM and Gmail",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def rt() -> AgentRuntime:
        return app.state.runtime

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        runtime_ = rt()
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "store": type(runtime_.store).__name__,
            "open_windows": len(runtime_.pipeline.batcher.open_windows()),
            "sender": runtime_.sender.stats(),
            "channels": await runtime_.channels.health_check_all(),
        }

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS — Instagram
    # ══════════════════════════════════════════════════════════

    @app.get("/webhooks/instagram/{account_id}")
    async def instagram_verify(account_id: str, request: Request):
        sender = rt().channels.get(account_id)
        if not isinstance(sender, InstagramSender):
            raise HTTPException(404, "Unknown Instagram account")
        challenge = sender.verify_webhook(dict(request.query_params))
        if challenge is None:
            raise HTTPException(403, "Verification failed")
        return PlainTextResponse(challenge)

    @app.post("/webhooks/instagram/{account_id}")
    async def instagram_webhook(account_id: str, request: Request):
        return await _receive(ChannelType.INSTAGRAM, account_id, request)

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS — Gmail
    # ══════════════════════════════════════════════════════════

    @app.post("/webhooks/gmail/{account_id}")
    async def gmail_webhook(account_id: str, request: Request):
        return await _receive(ChannelType.GMAIL, account_id, request)

    async def _receive(channel: ChannelType, account_id: str, request: Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(400, "Body must be JSON")

        sender = rt().channels.get(account_id)
        if sender is None or sender.channel_type != channel:
            logger.warning("webhook_unknown_account", channel=channel.value, account_id=account_id)
            return {"status": "ignored"}

        accepted = 0
        try:
            for event in sender.parse_webhook(body):
                _, is_new = await rt().pipeline.handle_inbound(event)
                accepted += is_new
        except Exception as e:
            logger.error("webhook_processing_failed",
                         channel=channel.value, account_id=account_id, error=str(e))
            return {"status": "error", "accepted": accepted}
        return {"status": "ok", "accepted": accepted}

    # ══════════════════════════════════════════════════════════
    #  OUTBOUND QUEUE
    # ══════════════════════════════════════════════════════════

    @app.get("/api/outbound")
    async def list_outbound(
        status: Optional[OutboundStatus] = None,
        conversation_id: Optional[str] = None,
        limit: int = Query(100, ge=1, le=1000),
    ) -> list[OutboundItem]:
        return await rt().queue.list_items(status, conversation_id, limit)

    @app.get("/api/outbound/stats")
    async def outbound_stats():
        return await rt().queue.stats()

    @app.post("/api/outbound/{item_id}/reset")
    async def reset_outbound(item_id: str) -> OutboundItem:
        item = await rt().store.get_outbound_item(item_id)
        if item is None:
            raise HTTPException(404, f"outbound item {item_id} not found")
        try:
            async with rt().pipeline.conversation_lock(item.conversation_id):
                return await rt().queue.reset_item(item_id)
        except ItemNotFoundError as e:
            raise HTTPException(404, str(e))
        except QueueInvariantError as e:
            raise HTTPException(409, str(e))

    # ══════════════════════════════════════════════════════════
    #  AGENT CONFIGURATION
    # ══════════════════════════════════════════════════════════

    @app.get("/api/agent-config")
    async def get_agent_config() -> GlobalAgentConfig:
        return await rt().config_provider.get()

    @app.put("/api/agent-config")
    async def update_agent_config(config: GlobalAgentConfig) -> GlobalAgentConfig:
        provider = rt().config_provider
        if not isinstance(provider, StoreAgentConfigProvider):
            raise HTTPException(409, "Agent configuration is read-only in this deployment")
        return await provider.update(config)

    # ══════════════════════════════════════════════════════════
    #  CONVERSATIONS
    # ══════════════════════════════════════════════════════════

    @app.put("/api/conversations/{conversation_id}/milestone")
    async def update_milestone(conversation_id: str, setting: MilestoneSetting):
        store = rt().store
        async with rt().pipeline.conversation_lock(conversation_id):
            conversation = await store.get_conversation(conversation_id)
            if conversation is None:
                raise HTTPException(404, "Conversation not found")
            set_milestone(conversation, setting)
            await store.save_conversation(conversation)
        return conversation

    @app.post("/api/conversations/{conversation_id}/reset-counter")
    async def reset_counter(conversation_id: str):
        async with rt().pipeline.conversation_lock(conversation_id):
            conversation = await rt().rules.reset_response_counter(conversation_id)
        if conversation is None:
            raise HTTPException(404, "Conversation not found")
        return conversation

    @app.post("/api/conversations/{conversation_id}/reminder-sent")
    async def reminder_sent(conversation_id: str):
        store = rt().store
        async with rt().pipeline.conversation_lock(conversation_id):
            conversation = await store.get_conversation(conversation_id)
            if conversation is None:
                raise HTTPException(404, "Conversation not found")
            mark_reminder_sent(conversation)
            await store.save_conversation(conversation)
        logger.info("reminder_marked", conversation_id=conversation_id)
        return conversation

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
