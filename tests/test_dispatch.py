"""Tests for the dispatch loop, retention ticker and subprocess executor.

Validates:
- executor outcomes map onto queue transitions (success, error, needs_auth, exceptions)
- jobs run sequentially in ready-set order and one failure never stops the tick
- the retry ceiling sentinel and file cleanup on success
- retention scheduling and the subprocess result contract
"""

import asyncio
import json
import shlex
import sys
from datetime import datetime, timezone

import pytest

from relay.domain.errors import AuthenticationRequired, ExecutorError
from relay.domain.models import EngineConfig, ExecutorResult
from relay.domain.states import JobStatus
from relay.scheduler.executor import SubprocessExecutor, coerce_result
from relay.scheduler.service import MAX_RETRIES_MESSAGE, DispatchLoop
from relay.scheduler.ticker import RetentionTicker


class ScriptedExecutor:
    """Returns queued outcomes in call order and records every call."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def __call__(self, platform, action, payload, file_path=None):
        self.calls.append((platform, action, payload, file_path))
        outcome = self.outcomes.pop(0) if self.outcomes else {"success": True}
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _python(script):
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(script)}"


# =============================================================================
# result contract
# =============================================================================


class TestExecutorResult:
    def test_from_dict_maps_camel_case(self):
        result = ExecutorResult.from_dict(
            {"success": True, "postId": "p1", "url": "https://x", "views": 3},
            "youtube",
            "upload",
        )
        assert result.success is True
        assert result.post_id == "p1"
        assert result.url == "https://x"
        assert result.extra == {"views": 3}

    def test_video_id_is_a_post_id(self):
        assert ExecutorResult.from_dict({"success": True, "videoId": "v1"}, "youtube", "upload").post_id == "v1"

    def test_missing_success_is_failure(self):
        result = ExecutorResult.from_dict({"needsAuth": True}, "tiktok", "upload")
        assert result.success is False
        assert result.needs_auth is True

    @pytest.mark.parametrize(
        "raw, expected",
        [("false", False), ("False", False), ("true", True), (" TRUE ", True), (1, False), (None, False)],
    )
    def test_string_flags_follow_their_text(self, raw, expected):
        result = ExecutorResult.from_dict({"success": raw, "needsAuth": raw}, "youtube", "upload")
        assert result.success is expected
        assert result.needs_auth is expected

    def test_to_dict_omits_empty_fields(self):
        result = ExecutorResult(success=True, platform="youtube", action="upload", post_id="p1")
        assert result.to_dict() == {"success": True, "platform": "youtube", "action": "upload", "postId": "p1"}

    def test_coerce_rejects_other_types(self):
        result = coerce_result("done", "youtube", "upload")
        assert result.success is False
        assert "str" in result.error


# =============================================================================
# dispatch loop
# =============================================================================


class TestDispatchTick:
    async def test_success_completes_job_with_result(self, queue):
        job_id = await queue.enqueue("youtube", "upload", {"title": "t"})
        executor = ScriptedExecutor({"success": True, "postId": "abc", "url": "https://youtu.be/abc"})

        report = await DispatchLoop(queue, executor).tick()

        assert (report.processed, report.completed, report.failed) == (1, 1, 0)
        assert executor.calls == [("youtube", "upload", {"title": "t"}, None)]
        job = await queue.get(job_id)
        assert job.status == JobStatus.COMPLETED
        result = json.loads(job.result_json)
        assert result["postId"] == "abc"
        assert result["success"] is True

    async def test_failure_records_error_and_counts_attempt(self, queue):
        job_id = await queue.enqueue("tiktok", "upload", {})
        executor = ScriptedExecutor({"success": False, "error": "quota exceeded"})

        await DispatchLoop(queue, executor).tick()

        job = await queue.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == "quota exceeded"
        assert job.retry_count == 1

    async def test_unstorable_success_result_fails_job(self, queue):
        bad_id = await queue.enqueue("youtube", "upload", {"n": 1})
        good_id = await queue.enqueue("youtube", "upload", {"n": 2})
        executor = ScriptedExecutor(
            {"success": True, "publishedAt": datetime(2025, 6, 15, tzinfo=timezone.utc)},
            {"success": True, "postId": "ok"},
        )
        loop = DispatchLoop(queue, executor)

        report = await loop.tick()

        assert (report.processed, report.completed, report.failed) == (2, 1, 1)
        bad = await queue.get(bad_id)
        assert bad.status == JobStatus.FAILED
        assert bad.retry_count == 1
        assert "not JSON serializable" in bad.error_message
        assert (await queue.get(good_id)).status == JobStatus.COMPLETED

        # Failed jobs leave the ready set
        await loop.tick()
        assert len(executor.calls) == 2

    async def test_failure_without_error_text(self, queue):
        job_id = await queue.enqueue("tiktok", "upload", {})
        await DispatchLoop(queue, ScriptedExecutor({"success": False})).tick()
        assert (await queue.get(job_id)).error_message == "Unknown error"

    async def test_needs_auth_is_recorded_as_authentication_failure(self, queue):
        job_id = await queue.enqueue("youtube", "upload", {})
        executor = ScriptedExecutor({"success": False, "needsAuth": True, "error": "token revoked"})

        await DispatchLoop(queue, executor).tick()

        job = await queue.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_message.startswith("Authentication required")
        assert "token revoked" in job.error_message
        assert job.retry_count == 1

    async def test_raised_authentication_required(self, queue):
        job_id = await queue.enqueue("facebook", "post-page", {})
        executor = ScriptedExecutor(AuthenticationRequired("facebook", "page token missing"))

        report = await DispatchLoop(queue, executor).tick()

        assert report.failed == 1
        job = await queue.get(job_id)
        assert job.error_message == "Authentication required: page token missing"
        assert job.retry_count == 1

    async def test_exception_fails_job_and_tick_continues(self, queue):
        first = await queue.enqueue("youtube", "upload", {"n": 1})
        second = await queue.enqueue("youtube", "upload", {"n": 2})
        executor = ScriptedExecutor(RuntimeError("publisher crashed"), {"success": True})

        report = await DispatchLoop(queue, executor).tick()

        assert (report.processed, report.completed, report.failed) == (2, 1, 1)
        assert (await queue.get(first)).error_message == "publisher crashed"
        assert (await queue.get(second)).status == JobStatus.COMPLETED

    async def test_exception_without_message_uses_type_name(self, queue):
        job_id = await queue.enqueue("youtube", "upload", {})
        await DispatchLoop(queue, ScriptedExecutor(TimeoutError())).tick()
        assert (await queue.get(job_id)).error_message == "TimeoutError"

    async def test_jobs_run_in_ready_set_order(self, queue, clock):
        from datetime import timedelta

        later = await queue.enqueue("tiktok", "upload", {"n": "later"}, scheduled_at=clock() - timedelta(minutes=1))
        sooner = await queue.enqueue("youtube", "upload", {"n": "sooner"}, scheduled_at=clock() - timedelta(hours=1))
        executor = ScriptedExecutor()

        await DispatchLoop(queue, executor).tick()

        assert [call[2]["n"] for call in executor.calls] == ["sooner", "later"]
        assert {later, sooner} == {j.id for j in await queue.list_jobs(status=JobStatus.COMPLETED)}

    async def test_jobs_are_awaited_one_at_a_time(self, queue):
        for _ in range(3):
            await queue.enqueue("youtube", "upload", {})

        running = 0
        peak = 0

        async def slow_executor(platform, action, payload, file_path=None):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return {"success": True}

        report = await DispatchLoop(queue, slow_executor).tick()
        assert report.completed == 3
        assert peak == 1

    async def test_future_jobs_are_left_alone(self, queue, clock):
        from datetime import timedelta

        job_id = await queue.enqueue("youtube", "upload", {}, scheduled_at=clock() + timedelta(hours=1))
        executor = ScriptedExecutor()

        report = await DispatchLoop(queue, executor).tick()

        assert report.processed == 0
        assert executor.calls == []
        assert (await queue.get(job_id)).status == JobStatus.PENDING

    async def test_failed_jobs_stop_after_max_retries(self, queue):
        job_id = await queue.enqueue("youtube", "upload", {})
        executor = ScriptedExecutor(*[{"success": False, "error": "nope"}] * 5)
        loop = DispatchLoop(queue, executor)

        for _ in range(5):
            await loop.tick()
            await queue.retry(job_id)

        assert len(executor.calls) == 3
        job = await queue.get(job_id)
        assert job.retry_count == 3
        assert job.status == JobStatus.PENDING

    async def test_lowered_ceiling_marks_job_failed_without_executing(self, queue, store, clock):
        job_id = await queue.enqueue("youtube", "upload", {})
        await queue.fail(job_id, "boom")
        await queue.retry(job_id)

        executor = ScriptedExecutor()
        report = await DispatchLoop(queue, executor, EngineConfig(max_retries=1)).tick()

        assert executor.calls == []
        assert report.skipped == 1
        job = await queue.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == MAX_RETRIES_MESSAGE
        assert job.retry_count == 2

    async def test_file_removed_after_success(self, queue, tmp_path):
        media = tmp_path / "clip.mp4"
        media.write_bytes(b"\x00\x01")
        await queue.enqueue("tiktok", "upload", {}, file_path=str(media))

        executor = ScriptedExecutor({"success": True})
        await DispatchLoop(queue, executor).tick()

        assert executor.calls[0][3] == str(media)
        assert not media.exists()

    async def test_file_kept_after_failure(self, queue, tmp_path):
        media = tmp_path / "clip.mp4"
        media.write_bytes(b"\x00")
        await queue.enqueue("tiktok", "upload", {}, file_path=str(media))

        await DispatchLoop(queue, ScriptedExecutor({"success": False, "error": "x"})).tick()
        assert media.exists()

    async def test_file_kept_when_removal_disabled(self, queue, tmp_path):
        media = tmp_path / "clip.mp4"
        media.write_bytes(b"\x00")
        await queue.enqueue("tiktok", "upload", {}, file_path=str(media))

        config = EngineConfig(remove_files_on_success=False)
        await DispatchLoop(queue, ScriptedExecutor(), config).tick()
        assert media.exists()

    async def test_missing_file_does_not_fail_completed_job(self, queue, tmp_path):
        job_id = await queue.enqueue("tiktok", "upload", {}, file_path=str(tmp_path / "gone.mp4"))
        await DispatchLoop(queue, ScriptedExecutor()).tick()
        assert (await queue.get(job_id)).status == JobStatus.COMPLETED


class TestDispatchLifecycle:
    async def test_start_processes_and_stop_cancels(self, queue):
        job_id = await queue.enqueue("youtube", "upload", {})
        loop = DispatchLoop(queue, ScriptedExecutor())

        await loop.start()
        for _ in range(100):
            if (await queue.get(job_id)).status == JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        await loop.stop()

        assert (await queue.get(job_id)).status == JobStatus.COMPLETED
        assert loop._task.done()

    async def test_tick_errors_do_not_end_the_loop(self, queue, monkeypatch):
        loop = DispatchLoop(queue, ScriptedExecutor())
        calls = 0

        async def broken_tick():
            nonlocal calls
            calls += 1
            raise RuntimeError("database is locked")

        monkeypatch.setattr(loop, "tick", broken_tick)
        await loop.start()
        for _ in range(100):
            if calls >= 2:
                break
            await asyncio.sleep(0.01)
        await loop.stop()

        assert calls >= 2


# =============================================================================
# retention ticker
# =============================================================================


class TestRetentionTicker:
    def test_next_run_is_next_midnight(self, queue, clock):
        ticker = RetentionTicker(queue, clock=clock)
        assert ticker.next_run() == datetime(2025, 6, 16, 0, 0, tzinfo=timezone.utc)

    def test_invalid_schedule(self, queue):
        with pytest.raises(ValueError):
            RetentionTicker(queue, schedule="every day")

    def test_retention_defaults_to_config(self, queue):
        assert RetentionTicker(queue).retention_days == 7
        assert RetentionTicker(queue, retention_days=30).retention_days == 30

    async def test_run_once_purges_terminal_jobs(self, queue, clock):
        done = await queue.enqueue("youtube", "upload", {})
        waiting = await queue.enqueue("youtube", "upload", {})
        await queue.complete(done, {})
        clock.advance(days=8)

        assert await RetentionTicker(queue, clock=clock).run_once() == 1
        assert await queue.get(done) is None
        assert await queue.get(waiting) is not None


# =============================================================================
# subprocess executor
# =============================================================================


class TestSubprocessExecutor:
    def test_argv_substitutes_platform_and_appends_arguments(self):
        executor = SubprocessExecutor("bun run src/skills/{platform}-skill.ts")
        argv = executor.build_argv("tiktok", "upload", {"caption": "hi"}, "/tmp/v.mp4")

        assert argv[:3] == ["bun", "run", "src/skills/tiktok-skill.ts"]
        assert argv[3] == "upload"
        assert json.loads(argv[4]) == {"caption": "hi", "filePath": "/tmp/v.mp4"}

    async def test_reads_json_result(self):
        script = (
            "import json, sys; args = json.loads(sys.argv[2]); "
            "print(json.dumps({'success': True, 'postId': sys.argv[1] + ':' + args['title']}))"
        )
        result = await SubprocessExecutor(_python(script))("youtube", "upload", {"title": "hello"})

        assert result.success is True
        assert result.post_id == "upload:hello"

    async def test_non_zero_exit_keeps_needs_auth_from_stdout(self):
        script = "import json, sys; print(json.dumps({'success': False, 'needsAuth': True})); sys.exit(1)"
        result = await SubprocessExecutor(_python(script))("tiktok", "upload", {})

        assert result.success is False
        assert result.needs_auth is True

    async def test_non_zero_exit_uses_stderr(self):
        script = "import sys; sys.stderr.write('boom'); sys.exit(2)"
        result = await SubprocessExecutor(_python(script))("tiktok", "upload", {})

        assert result.success is False
        assert result.error == "boom"

    async def test_non_zero_exit_without_output(self):
        result = await SubprocessExecutor(_python("import sys; sys.exit(3)"))("tiktok", "upload", {})
        assert result.error == "Skill exited with code 3"

    async def test_invalid_json_output(self):
        result = await SubprocessExecutor(_python("print('hello')"))("tiktok", "upload", {})
        assert result.success is False
        assert result.error == "Invalid JSON output: hello"

    async def test_timeout(self):
        executor = SubprocessExecutor(_python("import time; time.sleep(5)"), timeout=0.2)
        with pytest.raises(ExecutorError, match="timed out"):
            await executor("tiktok", "upload", {})

    async def test_missing_program(self, tmp_path):
        executor = SubprocessExecutor(str(tmp_path / "no-such-publisher"))
        with pytest.raises(ExecutorError, match="Could not start"):
            await executor("tiktok", "upload", {})

    async def test_dispatch_with_subprocess(self, queue):
        job_id = await queue.enqueue("facebook", "post-page", {"message": "hi"})
        script = "import json; print(json.dumps({'success': True, 'postId': '123_456'}))"

        await DispatchLoop(queue, SubprocessExecutor(_python(script))).tick()

        job = await queue.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert json.loads(job.result_json)["postId"] == "123_456"
