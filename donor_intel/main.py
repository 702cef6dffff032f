import os
import sys
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from dotenv import load_dotenv
from langchain_openai import AzureChatOpenAI, ChatOpenAI

from donor_intel.context import RequestContext
from donor_intel.errors import ConfigurationError, StoreError
from donor_intel.models import (
    ChatAnswer,
    ChatTurn,
    DashboardMetrics,
    DonationTrendPoint,
    DonorSearchItem,
    DonorSearchResult,
    EmailDraft,
    EmbeddingRefreshStats,
    LifecycleConfig,
    TopDonorRow,
)
from donor_intel.services import donor_chat, donor_embeddings, donor_search, giving_aggregator, letter_writer
from donor_intel.services.cosmos_store import CosmosDonorStore

load_dotenv()

APP_SETTINGS_PATH = Path(__file__).resolve().parent / "config" / "app_settings.json"


def load_app_settings() -> Dict[str, Any]:
    with open(APP_SETTINGS_PATH, "r", encoding="utf-8") as f:
        return json.load(f)


def configure_logging(level: Optional[str] = None) -> None:
    if level is None and load_app_settings().get("enable_debug_logging", False):
        level = "DEBUG"
    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def _require_env(var: str) -> str:
    val = os.getenv(var)
    if not val:
        raise ConfigurationError(f"Missing required environment variable: {var}")
    return val


def _build_llm() -> Any:
    """Chat model for the outreach drafts; Azure OpenAI when OPENAI_API_BASE is set."""
    app_settings = load_app_settings()
    api_key = _require_env("OPENAI_API_KEY")
    temperature = float(app_settings.get("chat_temperature", 0.3))

    if os.getenv("OPENAI_API_BASE"):
        # OPENAI_MODEL must be the Azure *deployment name*
        return AzureChatOpenAI(
            azure_deployment=_require_env("OPENAI_MODEL"),
            azure_endpoint=os.getenv("OPENAI_API_BASE"),
            openai_api_version=_require_env("OPENAI_API_VERSION"),
            api_key=api_key,
            temperature=temperature,
            max_retries=3,
        )
    return ChatOpenAI(
        model=os.getenv("OPENAI_MODEL") or app_settings.get("chat_model", "gpt-4o-mini"),
        api_key=api_key,
        temperature=temperature,
        max_retries=3,
    )


def _build_embedder() -> donor_embeddings.OpenAIEmbedder:
    app_settings = load_app_settings()
    model = os.getenv("OPENAI_EMBEDDING_MODEL") or app_settings.get("embedding_model", "text-embedding-3-small")
    return donor_embeddings.OpenAIEmbedder(model=model)


def _build_store() -> CosmosDonorStore:
    _require_env("AZURE_COSMOS_CONNECTION_STRING")
    return CosmosDonorStore.from_env()


@asynccontextmanager
async def _store_scope(store: Any = None) -> AsyncIterator[Any]:
    """Use the injected store as-is; a store built here is closed on exit."""
    if store is not None:
        yield store
        return
    built = _build_store()
    async with built:
        yield built


def build_request_context(
    org_id: str,
    now: Optional[datetime] = None,
    lifecycle: Optional[Dict[str, Any]] = None,
) -> RequestContext:
    """
    Per-request context for an org already resolved by the caller. Lifecycle
    thresholds come from the org's own settings when given, else app defaults.
    """
    if not org_id:
        raise ValueError("org_id is required")
    lifecycle_config = LifecycleConfig.from_settings(load_app_settings().get("lifecycle"), lifecycle)
    if now is None:
        return RequestContext(org_id=org_id, lifecycle_config=lifecycle_config)
    return RequestContext(org_id=org_id, now=now, lifecycle_config=lifecycle_config)


async def run_donor_search(
    query: str, ctx: RequestContext, store: Any = None, embedder: Any = None
) -> DonorSearchResult:
    if not (query or "").strip():
        # empty query short-circuits before any collaborator is built
        return await donor_search.search_donors(query, ctx.org_id, embedder=embedder, store=store)
    async with _store_scope(store) as scoped:
        return await donor_search.search_donors(
            query, ctx.org_id, embedder=embedder or _build_embedder(), store=scoped
        )


async def run_quick_search(query: str, ctx: RequestContext, store: Any = None) -> List[DonorSearchItem]:
    if not (query or "").strip():
        return []
    async with _store_scope(store) as scoped:
        return await donor_search.quick_search(query, ctx.org_id, store=scoped)


async def run_top_donors(range_: str, ctx: RequestContext, store: Any = None) -> List[TopDonorRow]:
    limit = int(load_app_settings().get("top_donors_limit", giving_aggregator.TOP_DONORS_LIMIT))
    async with _store_scope(store) as scoped:
        return await giving_aggregator.top_donors(scoped, ctx.org_id, range_, today=ctx.today, limit=limit)


async def run_dashboard_metrics(ctx: RequestContext, store: Any = None) -> DashboardMetrics:
    async with _store_scope(store) as scoped:
        return await giving_aggregator.dashboard_metrics(scoped, ctx.org_id)


async def run_donation_trend(ctx: RequestContext, store: Any = None) -> List[DonationTrendPoint]:
    async with _store_scope(store) as scoped:
        return await giving_aggregator.donation_trend(scoped, ctx.org_id, today=ctx.today)


async def _load_donor(store: Any, donor_id: str, ctx: RequestContext) -> Dict[str, Any]:
    donor = await store.get_donor(donor_id, ctx.org_id)
    if not donor:
        raise StoreError("Donor not found.")
    return donor


async def run_year_end_letter(
    donor_id: str, year: int, ctx: RequestContext, store: Any = None, llm: Any = None
) -> str:
    async with _store_scope(store) as scoped:
        donor = await _load_donor(scoped, donor_id, ctx)
        summary = await giving_aggregator.year_giving_summary(scoped, donor_id, year)
    return await letter_writer.generate_year_end_letter(llm or _build_llm(), donor, summary)


async def run_text_draft(donor_id: str, ctx: RequestContext, store: Any = None, llm: Any = None) -> str:
    async with _store_scope(store) as scoped:
        donor = await _load_donor(scoped, donor_id, ctx)
    return await letter_writer.generate_text_draft(
        llm or _build_llm(), donor, config=ctx.lifecycle_config, now=ctx.now
    )


async def run_email_draft(donor_id: str, ctx: RequestContext, store: Any = None, llm: Any = None) -> EmailDraft:
    async with _store_scope(store) as scoped:
        donor = await _load_donor(scoped, donor_id, ctx)
    return await letter_writer.generate_email_draft(llm or _build_llm(), donor)


async def run_embedding_refresh(
    ctx: RequestContext, store: Any = None, embedder: Any = None, force: bool = False
) -> EmbeddingRefreshStats:
    async with _store_scope(store) as scoped:
        return await donor_embeddings.refresh_donor_embeddings(
            scoped, embedder or _build_embedder(), ctx.org_id, force=force
        )


async def run_chat(
    message: str,
    ctx: RequestContext,
    history: Optional[List[ChatTurn]] = None,
    store: Any = None,
    embedder: Any = None,
    llm: Any = None,
) -> ChatAnswer:
    if not (message or "").strip():
        raise ValueError("Message required")
    # only the search route needs an embedder and a model
    if donor_chat.classify_question(message) == "search":
        embedder = embedder or _build_embedder()
        llm = llm or _build_llm()
    async with _store_scope(store) as scoped:
        return await donor_chat.answer_question(
            llm, message, ctx, embedder=embedder, store=scoped, history=history
        )
