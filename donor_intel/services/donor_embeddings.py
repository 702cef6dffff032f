# donor_intel/services/donor_embeddings.py
import os
import asyncio
import logging
from collections.abc import Mapping
from typing import Any, List, Optional, Sequence, Tuple

from openai import AsyncAzureOpenAI, AsyncOpenAI

from donor_intel.errors import ConfigurationError, EmbeddingError
from donor_intel.models import EmbeddingRefreshStats
from donor_intel.utils.coerce import to_number
from donor_intel.utils.helpers import chunked

# ---- Env flags / knobs ----
OPENAI_EMBEDDING_MODEL = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "100"))


def build_openai_client() -> AsyncOpenAI:
    """
    Async OpenAI client from the environment. Uses Azure OpenAI when
    OPENAI_API_BASE is set, the public endpoint otherwise.
    """
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise ConfigurationError("Missing OPENAI_API_KEY.")
    api_base = os.getenv("OPENAI_API_BASE")
    if api_base:
        return AsyncAzureOpenAI(
            api_key=api_key,
            azure_endpoint=api_base,
            api_version=os.getenv("OPENAI_API_VERSION", "2024-06-01"),
        )
    return AsyncOpenAI(api_key=api_key)


class OpenAIEmbedder:
    """Text -> vector via the OpenAI embeddings API. The client is built on first use."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = OPENAI_EMBEDDING_MODEL,
        batch_size: int = EMBEDDING_BATCH_SIZE,
    ):
        self.client = client
        self.model = model
        self.batch_size = batch_size

    def _get_client(self) -> AsyncOpenAI:
        if self.client is None:
            self.client = build_openai_client()
        return self.client

    async def embed(self, text: str) -> List[float]:
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        client = self._get_client()
        out: List[List[float]] = []
        for batch in chunked(list(texts), self.batch_size):
            try:
                resp = await client.embeddings.create(model=self.model, input=batch)
            except Exception as e:
                raise EmbeddingError(f"Embedding request failed: {e}") from e
            vectors = [list(d.embedding) for d in (resp.data or [])]
            if len(vectors) != len(batch) or any(not v for v in vectors):
                raise EmbeddingError("Failed to generate query embedding.")
            out.extend(vectors)
        return out


def donor_context_string(donor: Any) -> str:
    """Sentence describing a donor; this is what gets embedded for vector search."""
    def pick(name: str) -> Any:
        return donor.get(name) if isinstance(donor, Mapping) else getattr(donor, name, None)

    name = pick("display_name") or "Unknown"
    city = pick("city") or "Unknown"
    state = pick("state") or "Unknown"
    email = pick("email") or "Unknown"
    ltv = to_number(pick("total_lifetime_value"))
    return (
        f"{name} is a donor located in {city}, {state}. "
        f"They have a total lifetime value of ${ltv:.2f}. Contact email: {email}."
    )


async def refresh_donor_embeddings(
    store: Any,
    embedder: OpenAIEmbedder,
    org_id: str,
    force: bool = False,
) -> EmbeddingRefreshStats:
    """
    (Re)embed the org's donors whose embedding is missing or was computed from
    a different context string. Embedding failures propagate; a failed write
    for one donor is logged and the rest continue.
    """
    donors = await store.donors_for_embedding(org_id) or []
    stats = EmbeddingRefreshStats(considered=len(donors))

    targets: List[Tuple[str, str]] = []
    for donor in donors:
        text = donor_context_string(donor)
        if not force and donor.get("has_embedding") and donor.get("embedding_text") == text:
            stats.skipped += 1
            continue
        targets.append((str(donor.get("id")), text))

    for batch in chunked(targets, embedder.batch_size):
        stats.attempted += len(batch)
        vectors = await embedder.embed_many([text for _, text in batch])
        results = await asyncio.gather(
            *(store.set_donor_embedding(donor_id, org_id, vector, text)
              for (donor_id, text), vector in zip(batch, vectors)),
            return_exceptions=True,
        )
        for (donor_id, _), result in zip(batch, results):
            if isinstance(result, Exception):
                logging.error(f"[Embeddings] write failed id={donor_id}: {result}")
            elif isinstance(result, BaseException):
                raise result
            else:
                stats.generated += 1

    logging.info(
        f"[Embeddings] org={org_id} considered={stats.considered} attempted={stats.attempted} "
        f"generated={stats.generated} skipped={stats.skipped}"
    )
    return stats
