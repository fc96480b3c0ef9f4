import asyncio
import os
import shutil
import tempfile
import unittest
from datetime import datetime, timezone

import httpx

from aggregator import (
    SentimentAggregator, EmotionApiClient, SyncInProgress, TranscodeError, AnalysisError,
    group_artifacts, average_scores, dominant_mood, extract_scores, build_report,
)
from database import JsonStore


class LoopCheckingStore(JsonStore):
    """Records whether each transaction was opened on a running event loop."""

    def __init__(self, path):
        super().__init__(path)
        self.on_event_loop = []

    def transaction(self):
        try:
            asyncio.get_running_loop()
            self.on_event_loop.append(True)
        except RuntimeError:
            self.on_event_loop.append(False)
        return super().transaction()


class TestGrouping(unittest.TestCase):
    def test_groups_by_owner_token(self):
        groups = group_artifacts([
            "video-42-1001.webm",
            "audio-42-1002-5.webm",
            "video-7-1003-1.webm",
        ])
        self.assertEqual(groups, {
            "42": ["video-42-1001.webm", "audio-42-1002-5.webm"],
            "7": ["video-7-1003-1.webm"],
        })

    def test_malformed_and_foreign_names_excluded(self):
        groups = group_artifacts(["video.webm", "video-", "image-42-1.png", "notes.txt"])
        self.assertEqual(groups, {})


class TestScoring(unittest.TestCase):
    def test_mean_rounds_half_up(self):
        averages = average_scores({"happiness": 141, "sadness": 3, "anger": 0, "fear": 0}, 2)
        self.assertEqual(averages, {"happiness": 71, "sadness": 2, "anger": 0, "fear": 0, "neutral": 0})

    def test_no_valid_samples_is_all_zero(self):
        self.assertEqual(average_scores({"happiness": 50}, 0),
                         {"happiness": 0, "sadness": 0, "anger": 0, "fear": 0, "neutral": 0})

    def test_dominant_mood(self):
        self.assertEqual(dominant_mood({"happiness": 10, "sadness": 40, "anger": 5, "fear": 0}), "sadness")
        self.assertEqual(dominant_mood({"happiness": 0, "sadness": 0, "anger": 0, "fear": 0, "neutral": 0}), "neutral")

    def test_dominant_mood_ties_go_to_later_axis(self):
        self.assertEqual(dominant_mood({"happiness": 50, "sadness": 50, "anger": 0, "fear": 0, "neutral": 0}), "sadness")
        self.assertEqual(dominant_mood({"happiness": 0, "sadness": 30, "anger": 30, "fear": 0, "neutral": 0}), "anger")
        self.assertEqual(dominant_mood({"happiness": 20, "sadness": 0, "anger": 0, "fear": 0, "neutral": 20}), "neutral")

    def test_neutral_can_dominate(self):
        averages = average_scores(extract_scores({"success": True, "scores": {"happiness": 10, "neutral": 90}}), 1)
        self.assertEqual(averages["neutral"], 90)
        self.assertEqual(dominant_mood(averages), "neutral")

    def test_extract_scores_shapes(self):
        self.assertEqual(extract_scores({"success": True, "scores": {"happiness": 80, "fear": 5}}),
                         {"happiness": 80.0, "fear": 5.0})
        self.assertEqual(extract_scores({"scores": {"anger": 12}}), {"anger": 12.0})
        self.assertEqual(extract_scores({"success": True, "sadness": 9, "neutral": 70, "calm": 3}),
                         {"sadness": 9.0, "neutral": 70.0})

    def test_extract_scores_rejects_malformed(self):
        for payload in ([], {"error": "bad"}, {"success": False}, "ok"):
            with self.assertRaises(AnalysisError):
                extract_scores(payload)

    def test_build_report(self):
        now = datetime(2026, 3, 1, 0, 5, tzinfo=timezone.utc)
        report = build_report({"id": "42", "name": "Grandma", "role": "elderly"},
                              {"happiness": 70, "sadness": 10, "anger": 0, "fear": 0}, 2, now=now)
        self.assertEqual(report["id"], f"daily-42-{int(now.timestamp() * 1000)}")
        self.assertEqual(report["date"], "2026-03-01")
        self.assertEqual(report["overallMood"], "happiness")
        self.assertEqual(report["interactionCount"], 2)
        self.assertEqual(report["details"]["happiness"], 70)


class TestEmotionApiClient(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        fd, self.wav = tempfile.mkstemp(suffix=".wav")
        os.write(fd, b"RIFF")
        os.close(fd)

    def tearDown(self):
        os.remove(self.wav)

    def client(self, handler):
        return EmotionApiClient("http://analysis.test/analyze", transport=httpx.MockTransport(handler))

    async def test_posts_file_and_reads_scores(self):
        seen = {}

        def handler(request):
            seen["body"] = request.read()
            return httpx.Response(200, json={"success": True, "scores": {"happiness": 80, "sadness": 5}})

        scores = await self.client(handler)(self.wav)
        self.assertEqual(scores, {"happiness": 80.0, "sadness": 5.0})
        self.assertIn(b'name="file"', seen["body"])
        self.assertIn(b"RIFF", seen["body"])

    async def test_error_status_raises(self):
        with self.assertRaises(httpx.HTTPStatusError):
            await self.client(lambda request: httpx.Response(503))(self.wav)

    async def test_non_json_raises(self):
        with self.assertRaises(AnalysisError):
            await self.client(lambda request: httpx.Response(200, text="<html>"))(self.wav)


class TestSentimentAggregator(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.public_dir = os.path.join(self.test_dir, "uploads")
        self.pending_dir = os.path.join(self.public_dir, "pending_analysis")
        os.makedirs(self.pending_dir)
        self.store = JsonStore(os.path.join(self.test_dir, "db.json"))
        self.store.put("users", [
            {"id": "42", "phone": "100", "name": "Grandma", "password": "x", "role": "elderly", "boundPhones": []},
            {"id": "7", "phone": "200", "name": "Tom", "password": "x", "role": "child", "boundPhones": []},
        ])
        self.scores = {}
        self.broken = set()
        self.transcoded = []

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    async def fake_transcode(self, source, target):
        name = os.path.basename(source)
        if name in self.broken:
            raise TranscodeError("corrupt input")
        with open(target, "wb") as fh:
            fh.write(b"RIFF")
        self.transcoded.append(target)

    async def fake_analyze(self, path):
        name = os.path.basename(path)[:-len(".wav")]
        result = self.scores.get(name)
        if result is None:
            raise AnalysisError("no scores")
        return result

    def queue(self, *names):
        for name in names:
            with open(os.path.join(self.pending_dir, name), "wb") as fh:
                fh.write(b"webm")

    def aggregator(self):
        return SentimentAggregator(self.store, self.pending_dir, self.public_dir,
                                   transcoder=self.fake_transcode, analyzer=self.fake_analyze)

    async def test_averages_scores_per_user(self):
        self.queue("video-42-1001.webm", "video-42-1002.webm")
        self.scores = {
            "video-42-1001.webm": {"happiness": 80, "sadness": 10},
            "video-42-1002.webm": {"happiness": 60, "sadness": 20},
        }

        result = await self.aggregator().run()

        self.assertEqual(len(result.reports), 1)
        report = self.store.get("reports")[0]
        self.assertEqual(report["userId"], "42")
        self.assertEqual(report["userName"], "Grandma")
        self.assertEqual(report["details"]["happiness"], 70)
        self.assertEqual(report["details"]["sadness"], 15)
        self.assertEqual(report["overallMood"], "happiness")
        self.assertEqual(report["interactionCount"], 2)

    async def test_artifacts_relocated_after_run(self):
        names = ["video-42-1001.webm", "audio-7-1002.webm"]
        self.queue(*names)
        self.scores = {n: {"fear": 10} for n in names}

        await self.aggregator().run()

        for name in names:
            self.assertFalse(os.path.exists(os.path.join(self.pending_dir, name)))
            self.assertTrue(os.path.exists(os.path.join(self.public_dir, name)))
        self.assertEqual(len(self.store.get("reports")), 2)
        self.assertTrue(all(not os.path.exists(p) for p in self.transcoded))

    async def test_failed_artifact_is_skipped(self):
        self.queue("video-42-1001.webm", "video-42-1002.webm", "video-42-1003.webm")
        self.broken = {"video-42-1002.webm"}
        self.scores = {"video-42-1001.webm": {"anger": 40}}

        await self.aggregator().run()

        report = self.store.get("reports")[0]
        self.assertEqual(report["details"]["anger"], 40)
        self.assertEqual(report["overallMood"], "anger")
        self.assertEqual(report["interactionCount"], 3)
        self.assertEqual(os.listdir(self.pending_dir), [])

    async def test_no_valid_samples_defaults_to_neutral(self):
        self.queue("audio-7-1.webm")

        await self.aggregator().run()

        report = self.store.get("reports")[0]
        self.assertEqual(report["overallMood"], "neutral")
        self.assertEqual(report["details"], {"happiness": 0, "sadness": 0, "anger": 0, "fear": 0, "neutral": 0})

    async def test_neutral_recordings_report_neutral(self):
        self.queue("audio-7-1.webm", "audio-7-2.webm")
        self.scores = {
            "audio-7-1.webm": {"happiness": 10, "neutral": 90},
            "audio-7-2.webm": {"happiness": 20, "neutral": 70},
        }

        await self.aggregator().run()

        report = self.store.get("reports")[0]
        self.assertEqual(report["overallMood"], "neutral")
        self.assertEqual(report["details"]["neutral"], 80)
        self.assertEqual(report["details"]["happiness"], 15)

    async def test_store_writes_happen_off_the_event_loop(self):
        self.store = LoopCheckingStore(self.store.path)
        self.queue("video-42-1.webm", "audio-7-1.webm")
        self.scores = {"video-42-1.webm": {"fear": 5}, "audio-7-1.webm": {"anger": 5}}

        await self.aggregator().run()

        self.assertEqual(self.store.on_event_loop, [False, False])
        self.assertEqual(len(self.store.get("reports")), 2)

    async def test_nothing_to_do(self):
        self.store.put("reports", [{"id": "old"}])
        self.queue("notes.txt")

        result = await self.aggregator().run()

        self.assertTrue(result.nothing_to_do)
        self.assertEqual(self.store.get("reports"), [{"id": "old"}])

    async def test_unknown_owner_left_queued(self):
        self.queue("video-999-1.webm")
        self.scores = {"video-999-1.webm": {"happiness": 50}}

        result = await self.aggregator().run()

        self.assertFalse(result.nothing_to_do)
        self.assertEqual(result.skipped_users, ["999"])
        self.assertEqual(self.store.get("reports"), [])
        self.assertTrue(os.path.exists(os.path.join(self.pending_dir, "video-999-1.webm")))

    async def test_new_reports_are_prepended(self):
        self.store.put("reports", [{"id": "old"}])
        self.queue("video-42-1.webm")
        self.scores = {"video-42-1.webm": {"happiness": 1}}

        await self.aggregator().run()

        self.assertEqual(self.store.get("reports")[1], {"id": "old"})

    async def test_single_run_at_a_time(self):
        aggregator = self.aggregator()
        aggregator._run_lock.acquire()
        try:
            with self.assertRaises(SyncInProgress):
                await aggregator.run()
        finally:
            aggregator._run_lock.release()
        self.assertFalse(aggregator.running)


if __name__ == '__main__':
    unittest.main()
