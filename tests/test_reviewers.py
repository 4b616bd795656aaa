import asyncio
import json
import sys

import pytest

from waypoint.errors import ReviewerError
from waypoint.models import Verdict
from waypoint.reviewers import (
    CommandReviewer,
    OpenAIReviewer,
    extract_payload,
    opinion_from_payload,
)


def test_opinion_from_payload_normalizes_fields() -> None:
    opinion = opinion_from_payload(
        {
            "score": 77.6,
            "verdict": "Approved",
            "scores": {"completeness": 80, "accuracy": 75.4, "notes": "n/a"},
            "strengths": ["Clear structure", "  "],
            "weaknesses": [" Thin sourcing "],
            "suggestions": [],
        },
        "claude",
    )

    assert opinion.reviewer_id == "claude"
    assert opinion.score == 78
    assert opinion.verdict == Verdict.APPROVED
    assert opinion.category_scores == {"completeness": 80, "accuracy": 75}
    assert opinion.strengths == ["Clear structure"]
    assert opinion.weaknesses == ["Thin sourcing"]


@pytest.mark.parametrize(
    "payload, message",
    [
        (["not", "an", "object"], "not an object"),
        ({"score": "high", "verdict": "approved"}, "must be a number"),
        ({"score": 101, "verdict": "approved"}, "outside 0-100"),
        ({"score": 50, "verdict": "maybe"}, "Unknown reviewer verdict"),
        ({"score": 50, "verdict": "approved", "weaknesses": "all of it"}, "must be a list"),
    ],
)
def test_opinion_from_payload_rejects_malformed_responses(payload, message: str) -> None:
    with pytest.raises(ReviewerError, match=message):
        opinion_from_payload(payload, "codex")


def test_extract_payload_reads_plain_and_wrapped_json() -> None:
    opinion = {"score": 70, "verdict": "needs_revision"}
    wrapped = json.dumps({"type": "result", "result": "```json\n" + json.dumps(opinion) + "\n```"})
    streamed = "\n".join(['{"type": "progress"}', json.dumps(opinion)])

    assert extract_payload(json.dumps(opinion)) == opinion
    assert extract_payload(wrapped) == opinion
    assert extract_payload(streamed) == opinion
    assert extract_payload("no json here") is None


def test_build_input_contains_prompt_artifact_and_context() -> None:
    reviewer = CommandReviewer("claude", ["claude", "-p"])

    rendered = reviewer.build_input("# Report", {"topic": "batteries"})

    assert rendered.startswith(reviewer.prompt)
    assert "Artifact:\n# Report" in rendered
    assert "Context JSON:" in rendered
    assert '"topic": "batteries"' in rendered


def test_command_reviewer_parses_subprocess_output() -> None:
    script = (
        "import sys, json; sys.stdin.read(); "
        "print(json.dumps({'score': 83, 'verdict': 'approved', 'weaknesses': ['Dense']}))"
    )
    reviewer = CommandReviewer("local", [sys.executable, "-c", script])

    opinion = asyncio.run(reviewer.review("# Report", {}))

    assert reviewer.available() is True
    assert opinion.reviewer_id == "local"
    assert opinion.score == 83
    assert opinion.weaknesses == ["Dense"]


def test_command_reviewer_reports_non_zero_exit() -> None:
    script = "import sys; sys.stdin.read(); sys.stderr.write('quota exceeded'); sys.exit(3)"
    reviewer = CommandReviewer("local", [sys.executable, "-c", script])

    with pytest.raises(ReviewerError, match="exited with code 3: quota exceeded"):
        asyncio.run(reviewer.review("# Report", {}))


def test_command_reviewer_missing_binary() -> None:
    reviewer = CommandReviewer("ghost", ["waypoint-reviewer-that-does-not-exist"])

    assert reviewer.available() is False
    with pytest.raises(ReviewerError, match="binary not found"):
        asyncio.run(reviewer.review("# Report", {}))


def test_command_reviewer_reaps_process_when_cancelled(monkeypatch: pytest.MonkeyPatch) -> None:
    spawned: list = []
    real_spawn = asyncio.create_subprocess_exec

    async def _spawn(*args, **kwargs):
        process = await real_spawn(*args, **kwargs)
        spawned.append(process)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", _spawn)
    script = "import sys, time; sys.stdin.read(); time.sleep(30)"
    reviewer = CommandReviewer("slow", [sys.executable, "-c", script])

    async def _review_with_deadline() -> None:
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(reviewer.review("# Report", {}), timeout=1.0)

    asyncio.run(_review_with_deadline())

    assert len(spawned) == 1
    assert spawned[0].returncode is not None


class FakeResponses:
    def __init__(self, output_text: str, captured: dict) -> None:
        self.output_text = output_text
        self.captured = captured

    def create(self, **kwargs):
        self.captured.update(kwargs)
        return {"output_text": self.output_text}


class FakeClient:
    def __init__(self, output_text: str, captured: dict) -> None:
        self.responses = FakeResponses(output_text, captured)


def test_openai_reviewer_sends_prompt_and_parses_reply() -> None:
    captured: dict = {}
    reply = json.dumps({"score": 64, "verdict": "needs_revision", "suggestions": ["Add data"]})
    reviewer = OpenAIReviewer("gpt", model="gpt-5-mini", client=FakeClient(reply, captured))

    opinion = asyncio.run(reviewer.review("# Report", {"topic": "batteries"}))

    assert reviewer.available() is True
    assert captured["model"] == "gpt-5-mini"
    assert captured["input"][0] == {"role": "system", "content": reviewer.prompt}
    assert "Artifact:\n# Report" in captured["input"][1]["content"]
    assert opinion.reviewer_id == "gpt"
    assert opinion.verdict == Verdict.NEEDS_REVISION
    assert opinion.suggestions == ["Add data"]


def test_openai_reviewer_without_json_reply_fails() -> None:
    reviewer = OpenAIReviewer("gpt", client=FakeClient("I liked it.", {}))

    with pytest.raises(ReviewerError, match="produced no JSON opinion"):
        asyncio.run(reviewer.review("# Report", {}))


def test_openai_reviewer_availability_follows_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert OpenAIReviewer("gpt").available() is False

    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert OpenAIReviewer("gpt").available() is True
