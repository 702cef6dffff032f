import os
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from openai import AsyncAzureOpenAI, AsyncOpenAI

from donor_intel.errors import ConfigurationError, EmbeddingError, StoreError
from donor_intel.services.donor_embeddings import (
    OpenAIEmbedder,
    build_openai_client,
    donor_context_string,
    refresh_donor_embeddings,
)

ORG = "org-1"


def _fake_client():
    def create(model, input):
        return SimpleNamespace(data=[SimpleNamespace(embedding=[float(len(t)), 1.0]) for t in input])

    client = MagicMock()
    client.embeddings.create = AsyncMock(side_effect=create)
    return client


class TestBuildClient(unittest.TestCase):

    @patch.dict(os.environ, {}, clear=True)
    def test_missing_key(self):
        with self.assertRaises(ConfigurationError):
            build_openai_client()

    @patch.dict(os.environ, {"OPENAI_API_KEY": "sk-test"}, clear=True)
    def test_public_endpoint(self):
        client = build_openai_client()
        self.assertIsInstance(client, AsyncOpenAI)
        self.assertNotIsInstance(client, AsyncAzureOpenAI)

    @patch.dict(os.environ, {
        "OPENAI_API_KEY": "sk-test",
        "OPENAI_API_BASE": "https://example.openai.azure.com/",
        "OPENAI_API_VERSION": "2024-06-01",
    }, clear=True)
    def test_azure_endpoint(self):
        self.assertIsInstance(build_openai_client(), AsyncAzureOpenAI)


class TestOpenAIEmbedder(unittest.IsolatedAsyncioTestCase):

    async def test_embed_many_batches_requests(self):
        client = _fake_client()
        embedder = OpenAIEmbedder(client=client, model="text-embedding-3-small", batch_size=2)

        vectors = await embedder.embed_many(["a", "bb", "ccc"])

        self.assertEqual(vectors, [[1.0, 1.0], [2.0, 1.0], [3.0, 1.0]])
        self.assertEqual(client.embeddings.create.await_count, 2)
        client.embeddings.create.assert_any_await(model="text-embedding-3-small", input=["ccc"])

    async def test_embed_single(self):
        embedder = OpenAIEmbedder(client=_fake_client())
        self.assertEqual(await embedder.embed("four"), [4.0, 1.0])

    async def test_api_error_becomes_embedding_error(self):
        client = MagicMock()
        client.embeddings.create = AsyncMock(side_effect=RuntimeError("429"))
        with self.assertRaises(EmbeddingError):
            await OpenAIEmbedder(client=client).embed("x")

    async def test_empty_vector_rejected(self):
        client = MagicMock()
        client.embeddings.create = AsyncMock(return_value=SimpleNamespace(data=[SimpleNamespace(embedding=[])]))
        with self.assertRaises(EmbeddingError):
            await OpenAIEmbedder(client=client).embed("x")


class TestDonorContextString(unittest.TestCase):

    def test_full_record(self):
        text = donor_context_string({
            "display_name": "Jane Doe",
            "city": "Austin",
            "state": "TX",
            "email": "jane@example.org",
            "total_lifetime_value": "1250.5",
        })
        self.assertEqual(
            text,
            "Jane Doe is a donor located in Austin, TX. "
            "They have a total lifetime value of $1250.50. Contact email: jane@example.org.",
        )

    def test_missing_fields(self):
        text = donor_context_string({})
        self.assertTrue(text.startswith("Unknown is a donor located in Unknown, Unknown."))
        self.assertIn("$0.00", text)


class TestRefreshDonorEmbeddings(unittest.IsolatedAsyncioTestCase):

    def _donors(self):
        current = {"id": "d1", "display_name": "Ann", "total_lifetime_value": 10}
        current["embedding_text"] = donor_context_string(current)
        current["has_embedding"] = True
        stale = {"id": "d2", "display_name": "Bo", "embedding_text": "old text", "has_embedding": True}
        missing = {"id": "d3", "display_name": "Cy", "has_embedding": False}
        return [current, stale, missing]

    def _embedder(self):
        embedder = MagicMock()
        embedder.batch_size = 100
        embedder.embed_many = AsyncMock(side_effect=lambda texts: [[0.5] for _ in texts])
        return embedder

    async def test_only_stale_or_missing_are_embedded(self):
        store = MagicMock()
        store.donors_for_embedding = AsyncMock(return_value=self._donors())
        store.set_donor_embedding = AsyncMock(return_value=None)
        embedder = self._embedder()

        stats = await refresh_donor_embeddings(store, embedder, ORG)

        self.assertEqual((stats.considered, stats.attempted, stats.generated, stats.skipped), (3, 2, 2, 1))
        written = [c.args[0] for c in store.set_donor_embedding.await_args_list]
        self.assertEqual(written, ["d2", "d3"])
        store.set_donor_embedding.assert_any_await("d3", ORG, [0.5], donor_context_string({"display_name": "Cy"}))

    async def test_force_reembeds_everyone(self):
        store = MagicMock()
        store.donors_for_embedding = AsyncMock(return_value=self._donors())
        store.set_donor_embedding = AsyncMock(return_value=None)

        stats = await refresh_donor_embeddings(store, self._embedder(), ORG, force=True)

        self.assertEqual((stats.attempted, stats.generated, stats.skipped), (3, 3, 0))

    async def test_write_failure_is_counted_not_raised(self):
        async def set_embedding(donor_id, org_id, vector, text):
            if donor_id == "d2":
                raise StoreError("conflict")

        store = MagicMock()
        store.donors_for_embedding = AsyncMock(return_value=self._donors())
        store.set_donor_embedding = AsyncMock(side_effect=set_embedding)

        stats = await refresh_donor_embeddings(store, self._embedder(), ORG)

        self.assertEqual((stats.attempted, stats.generated), (2, 1))

    async def test_embedding_failure_propagates(self):
        store = MagicMock()
        store.donors_for_embedding = AsyncMock(return_value=self._donors())
        store.set_donor_embedding = AsyncMock()
        embedder = self._embedder()
        embedder.embed_many.side_effect = EmbeddingError("down")

        with self.assertRaises(EmbeddingError):
            await refresh_donor_embeddings(store, embedder, ORG)
        store.set_donor_embedding.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
