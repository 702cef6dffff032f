import os
import unittest
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from langchain_openai import ChatOpenAI

from donor_intel import main
from donor_intel.errors import ConfigurationError, StoreError
from donor_intel.models import LifecycleConfig
from fakes import FakeDonorStore

NOW = datetime(2026, 10, 19, 15, 30, tzinfo=timezone.utc)
ORG = "org-1"


class TestBuildRequestContext(unittest.TestCase):

    def test_defaults_from_app_settings(self):
        ctx = main.build_request_context(ORG, now=NOW)

        self.assertEqual(ctx.org_id, ORG)
        self.assertEqual(ctx.today.isoformat(), "2026-10-19")
        self.assertEqual(ctx.lifecycle_config, LifecycleConfig(
            new_donor_months=6, lapsed_months=12, lost_months=24, major_donor_threshold=5000))

    def test_org_overrides(self):
        ctx = main.build_request_context(ORG, now=NOW, lifecycle={"major_donor_threshold": 1000})

        self.assertEqual(ctx.lifecycle_config.major_donor_threshold, 1000)
        self.assertEqual(ctx.lifecycle_config.lapsed_months, 12)

    def test_org_required(self):
        with self.assertRaises(ValueError):
            main.build_request_context("")


class TestBuilders(unittest.TestCase):

    @patch.dict(os.environ, {}, clear=True)
    def test_llm_requires_key(self):
        with self.assertRaises(ConfigurationError):
            main._build_llm()

    @patch.dict(os.environ, {"OPENAI_API_KEY": "sk-test"}, clear=True)
    def test_public_chat_model(self):
        llm = main._build_llm()
        self.assertIsInstance(llm, ChatOpenAI)
        self.assertEqual(llm.model_name, "gpt-4o-mini")

    @patch.dict(os.environ, {}, clear=True)
    def test_store_requires_connection_string(self):
        with self.assertRaises(ConfigurationError):
            main._build_store()


class TestEntryPoints(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.ctx = main.build_request_context(ORG, now=NOW)
        self.store = FakeDonorStore(
            donors=[
                {"id": "d1", "org_id": ORG, "display_name": "Jane Doe", "total_lifetime_value": 300,
                 "last_donation_date": "2026-10-01"},
                {"id": "d2", "org_id": ORG, "display_name": "Bo Li", "total_lifetime_value": 80,
                 "last_donation_date": "2024-01-10"},
            ],
            gifts=[
                {"donor_id": "d1", "amount": 120, "date": "2026-10-01"},
                {"donor_id": "d1", "amount": 30, "date": "2025-06-01"},
                {"donor_id": "d2", "amount": 80, "date": "2025-12-24"},
            ],
        )

    @patch("donor_intel.main._build_store")
    @patch("donor_intel.main._build_embedder")
    async def test_blank_search_builds_nothing(self, mock_build_embedder, mock_build_store):
        result = await main.run_donor_search("  ", self.ctx)

        self.assertEqual(result.method, "keyword")
        mock_build_embedder.assert_not_called()
        mock_build_store.assert_not_called()
        self.assertEqual(await main.run_quick_search("", self.ctx), [])

    async def test_top_donors_uses_request_clock(self):
        rows = await main.run_top_donors("30d", self.ctx, store=self.store)

        self.assertEqual([(r.id, r.amount) for r in rows], [("d1", 120.0)])
        self.assertEqual(self.store.gift_calls[0]["cutoff"], "2026-09-19")

    async def test_dashboard_and_trend(self):
        metrics = await main.run_dashboard_metrics(self.ctx, store=self.store)
        trend = await main.run_donation_trend(self.ctx, store=self.store)

        self.assertEqual(metrics.total_revenue, 380.0)
        self.assertEqual(trend[-1].total, 120.0)
        self.assertEqual(sum(p.total for p in trend), 200.0)

    async def test_year_end_letter(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=SimpleNamespace(content="Dear [DONOR_NAME], thank you."))

        letter = await main.run_year_end_letter("d1", 2025, self.ctx, store=self.store, llm=llm)

        self.assertEqual(letter, "Dear Jane Doe, thank you.")
        human = dict(llm.ainvoke.await_args.args[0])["human"]
        self.assertIn("$30.00", human)
        self.assertNotIn("Jane Doe", human)

    async def test_text_draft_uses_org_thresholds(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=SimpleNamespace(content="hi"))
        ctx = main.build_request_context(ORG, now=NOW, lifecycle={"lost_months": 60, "lapsed_months": 48})

        await main.run_text_draft("d2", ctx, store=self.store, llm=llm)

        # 33 months since the last gift: still Active under these thresholds
        self.assertIn("Status: Active", dict(llm.ainvoke.await_args.args[0])["human"])

    async def test_unknown_donor(self):
        with self.assertRaises(StoreError):
            await main.run_email_draft("nope", self.ctx, store=self.store, llm=MagicMock())

    async def test_other_org_donor_is_not_found(self):
        ctx = main.build_request_context("org-2", now=NOW)
        with self.assertRaises(StoreError):
            await main.run_text_draft("d1", ctx, store=self.store, llm=MagicMock())

    @patch("donor_intel.main._build_llm")
    @patch("donor_intel.main._build_embedder")
    async def test_chat_stats_question_builds_no_model(self, mock_build_embedder, mock_build_llm):
        answer = await main.run_chat("How many donors do we have?", self.ctx, store=self.store)

        self.assertEqual(answer.reply, "There are 2 donors.")
        mock_build_embedder.assert_not_called()
        mock_build_llm.assert_not_called()

    @patch("donor_intel.main._build_llm")
    @patch("donor_intel.main._build_embedder")
    async def test_chat_search_question_builds_model(self, mock_build_embedder, mock_build_llm):
        mock_build_embedder.return_value.embed = AsyncMock(return_value=[0.5])
        mock_build_llm.return_value.ainvoke = AsyncMock(return_value=SimpleNamespace(content="[[1]] gave $300."))
        store = MagicMock()
        store.match_donors = AsyncMock(return_value=[{"id": "d1", "display_name": "Jane Doe", "similarity": 0.7}])

        answer = await main.run_chat("Tell me about Jane", self.ctx, store=store)

        self.assertEqual(answer.route, "search")
        self.assertEqual(answer.reply, "[[d1|Jane Doe]] gave $300.")

    async def test_chat_requires_message(self):
        with self.assertRaises(ValueError):
            await main.run_chat(" ", self.ctx, store=self.store)

    @patch("donor_intel.main._build_store")
    async def test_built_store_is_closed(self, mock_build_store):
        built = MagicMock()
        built.__aenter__ = AsyncMock(return_value=built)
        built.__aexit__ = AsyncMock(return_value=None)
        built.lifetime_values_for_org = AsyncMock(return_value=[10, 20])
        mock_build_store.return_value = built

        metrics = await main.run_dashboard_metrics(self.ctx)

        self.assertEqual(metrics.total_donors, 2)
        built.__aexit__.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
