"""
Midnight sentiment sync

Turns the dialogue recordings parked in the pending-analysis directory into one daily
sentiment report per account:

  1. list `audio-*` / `video-*` artifacts and group them by the owner id embedded in
     the filename (`<kind>-<userId>-<timestamp>-<random>.<ext>`)
  2. per artifact: transcode to 16 kHz mono WAV with ffmpeg, POST it to the emotion
     analysis endpoint, add the returned scores to the owner's running total
  3. per owner: average the scores, pick the dominant mood, write the report
  4. move the owner's artifacts out of the holding area so they are not analyzed again

A failing artifact only lowers the valid-sample count. The report for a group is
persisted before its artifacts are moved, so an aborted run can be retried safely.
"""
import asyncio
import logging
import math
import os
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import httpx

from database import JsonStore
from schemas import EmotionScores, SentimentReport

logger = logging.getLogger(__name__)

ARTIFACT_PREFIXES = ("video-", "audio-")
EMOTION_AXES = ("happiness", "sadness", "anger", "fear")
# neutral is scored like the others and listed last, so an all-zero day lands on it
MOOD_AXES = EMOTION_AXES + ("neutral",)
FALLBACK_MOOD = "neutral"

MOOD_SUMMARIES = {
    "happiness": "Energetic, with a positive tone of voice.",
    "sadness": "Low tone of voice, mood seems a little down.",
    "anger": "Agitated, speaking quickly.",
    "fear": "Tense voice, showing some unease.",
    "neutral": "Calm and steady, nothing unusual.",
}
TREND_TEXT = "Voice analysis"
SUGGESTIONS_TEXT = "Check in with them and offer care based on how their day went."

Transcoder = Callable[[str, str], Awaitable[None]]
Analyzer = Callable[[str], Awaitable[Dict[str, float]]]


class TranscodeError(Exception):
    pass


class AnalysisError(Exception):
    pass


class SyncInProgress(Exception):
    pass


# -----------------------------
# Grouping and scoring helpers
# -----------------------------

def is_artifact(filename: str) -> bool:
    return filename.startswith(ARTIFACT_PREFIXES)


def parse_owner(filename: str) -> Optional[str]:
    parts = filename.split("-")
    if len(parts) < 2 or not parts[1]:
        return None
    return parts[1]


def group_artifacts(filenames: Iterable[str]) -> Dict[str, List[str]]:
    groups: Dict[str, List[str]] = {}
    for name in filenames:
        if not is_artifact(name):
            continue
        owner = parse_owner(name)
        if owner is None:
            continue
        groups.setdefault(owner, []).append(name)
    return groups


def list_artifacts(pending_dir: str) -> List[str]:
    return sorted(
        name for name in os.listdir(pending_dir)
        if is_artifact(name) and os.path.isfile(os.path.join(pending_dir, name))
    )


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def average_scores(totals: Dict[str, float], valid_count: int) -> Dict[str, float]:
    if valid_count <= 0:
        return {axis: 0 for axis in MOOD_AXES}
    return {axis: round_half_up(totals.get(axis, 0) / valid_count) for axis in MOOD_AXES}


def dominant_mood(averages: Dict[str, float]) -> str:
    # later axes win ties
    best = MOOD_AXES[0]
    for axis in MOOD_AXES[1:]:
        if averages.get(axis, 0) >= averages.get(best, 0):
            best = axis
    return best


def extract_scores(payload: Any) -> Dict[str, float]:
    """Accepts `{success, scores: {...}}` or a bare score object."""
    if not isinstance(payload, dict):
        raise AnalysisError("Analysis response is not a JSON object")
    scores = payload.get("scores")
    if not isinstance(scores, dict):
        if not payload.get("success"):
            raise AnalysisError("Analysis response carries no scores")
        scores = payload
    result: Dict[str, float] = {}
    for axis in MOOD_AXES:
        value = scores.get(axis)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            result[axis] = float(value)
    return result


def build_report(user: Dict[str, Any], averages: Dict[str, float], interaction_count: int,
                 now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    mood = dominant_mood(averages)
    report = SentimentReport(
        id=f"daily-{user['id']}-{int(now.timestamp() * 1000)}",
        userId=user["id"],
        userName=user.get("name") or "User",
        userRole=user.get("role") or "elderly",
        date=now.date().isoformat(),
        overallMood=mood,
        trend=TREND_TEXT,
        summary=MOOD_SUMMARIES.get(mood, MOOD_SUMMARIES[FALLBACK_MOOD]),
        details=EmotionScores(**averages),
        suggestions=SUGGESTIONS_TEXT,
        interactionCount=interaction_count,
    )
    return report.model_dump()


# -----------------------------
# External collaborators
# -----------------------------

class FfmpegTranscoder:
    def __init__(self, binary: str = "ffmpeg", sample_rate: int = 16000, timeout: float = 120):
        self.binary = binary
        self.sample_rate = sample_rate
        self.timeout = timeout

    async def __call__(self, source: str, target: str) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary, "-i", source, "-ar", str(self.sample_rate), "-ac", "1", "-y", target,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodeError(f"Cannot start {self.binary}: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TranscodeError(f"Transcoding timed out after {self.timeout}s")

        if proc.returncode != 0:
            tail = (stderr or b"").decode("utf-8", errors="replace").strip().splitlines()[-1:]
            raise TranscodeError(f"{self.binary} exited with {proc.returncode}: {' '.join(tail)}")


class EmotionApiClient:
    def __init__(self, url: str, timeout: float = 30, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def __call__(self, path: str) -> Dict[str, float]:
        try:
            with open(path, "rb") as fh:
                content = fh.read()
        except OSError as e:
            raise AnalysisError(f"Cannot read {path}: {e}") from e

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            r = await client.post(self.url, files={"file": (os.path.basename(path), content, "audio/wav")})
            r.raise_for_status()
            try:
                data = r.json()
            except ValueError as e:
                raise AnalysisError("Analysis response is not JSON") from e
        return extract_scores(data)


# -----------------------------
# The batch job
# -----------------------------

@dataclass
class SyncResult:
    artifact_count: int = 0
    reports: List[Dict[str, Any]] = field(default_factory=list)
    skipped_users: List[str] = field(default_factory=list)

    @property
    def nothing_to_do(self) -> bool:
        return self.artifact_count == 0


class SentimentAggregator:
    def __init__(self, store: JsonStore, pending_dir: str, public_dir: str,
                 transcoder: Transcoder, analyzer: Analyzer):
        self.store = store
        self.pending_dir = pending_dir
        self.public_dir = public_dir
        self.transcoder = transcoder
        self.analyzer = analyzer
        self._run_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    async def run(self) -> SyncResult:
        if not self._run_lock.acquire(blocking=False):
            raise SyncInProgress("A midnight sync is already running")
        try:
            return await self._run()
        finally:
            self._run_lock.release()

    async def _run(self) -> SyncResult:
        logger.info("Midnight sync triggered")
        filenames = await asyncio.to_thread(list_artifacts, self.pending_dir)
        groups = group_artifacts(filenames)
        result = SyncResult(artifact_count=sum(len(files) for files in groups.values()))
        if not groups:
            logger.info("No new recordings to analyze")
            return result

        users = {u.get("id"): u for u in await asyncio.to_thread(self.store.get, "users")}
        with tempfile.TemporaryDirectory(prefix="transcode-") as workdir:
            for user_id, files in groups.items():
                user = users.get(user_id)
                if user is None:
                    logger.warning("No account %s for %d recording(s), leaving them queued", user_id, len(files))
                    result.skipped_users.append(user_id)
                    continue

                logger.info("Analyzing %d recording(s) for %s (%s)", len(files), user.get("name"), user_id)
                totals, valid = await self._score_group(files, workdir)
                report = build_report(user, average_scores(totals, valid), len(files))

                # store lock and file moves stay off the event loop
                await asyncio.to_thread(self._commit, report, files)

                logger.info("Report %s: mood=%s from %d/%d valid samples",
                            report["id"], report["overallMood"], valid, len(files))
                result.reports.append(report)

        logger.info("Midnight sync finished: %d report(s) written", len(result.reports))
        return result

    async def _score_group(self, files: List[str], workdir: str) -> Tuple[Dict[str, float], int]:
        totals = {axis: 0.0 for axis in MOOD_AXES}
        valid = 0
        for name in files:
            source = os.path.join(self.pending_dir, name)
            wav_path = os.path.join(workdir, f"{name}.wav")
            try:
                await self.transcoder(source, wav_path)
                scores = await self.analyzer(wav_path)
            except (TranscodeError, AnalysisError, httpx.HTTPError) as e:
                logger.warning("Skipping %s: %s", name, e)
                continue
            finally:
                if os.path.exists(wav_path):
                    os.remove(wav_path)

            valid += 1
            for axis in MOOD_AXES:
                totals[axis] += scores.get(axis, 0)
        return totals, valid

    def _commit(self, report: Dict[str, Any], files: List[str]) -> None:
        with self.store.transaction() as data:
            data["reports"].insert(0, report)
        self._relocate(files)

    def _relocate(self, files: List[str]) -> None:
        os.makedirs(self.public_dir, exist_ok=True)
        for name in files:
            shutil.move(os.path.join(self.pending_dir, name), os.path.join(self.public_dir, name))
