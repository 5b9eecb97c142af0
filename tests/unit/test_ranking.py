from __future__ import annotations

from agent_session_search.search import (
    ORIGIN_INDEX,
    RankedMessage,
    apply_caps,
    make_snippet,
    matches_all,
    position_bonus,
    relevance_score,
    tokenize,
)


def _ranked(
    session_id: str,
    position: int,
    score: float = 1.0,
    timestamp: str | None = None,
    file_path: str | None = None,
) -> RankedMessage:
    return RankedMessage(
        session_id=session_id,
        source_kind="codex",
        file_path=file_path or f"/logs/{session_id}.jsonl",
        role="user",
        text="text",
        position=position,
        timestamp=timestamp,
        score=score,
        snippet="text",
        origin=ORIGIN_INDEX,
    )


def test_tokenize_lowercases_and_dedupes() -> None:
    assert tokenize("  Web API web  ") == ["web", "api"]
    assert tokenize("   ") == []


def test_matching_is_conjunctive() -> None:
    assert matches_all("Add web api handler", ["web", "api"])
    assert not matches_all("Fix api bug", ["web", "api"])
    assert matches_all("WEB-API", ["web", "api"])


def test_relevance_rewards_phrase_and_occurrences() -> None:
    tokens = ["web", "api"]

    phrase = relevance_score("the web api", tokens)
    scattered = relevance_score("api for the web", tokens)
    repeated = relevance_score("web web web api", tokens)

    assert phrase > scattered
    assert repeated > scattered


def test_position_bonus_prefers_early_matches() -> None:
    assert position_bonus("web first", ["web"]) == 1.0
    assert position_bonus(f"{'x' * 100} web", ["web"]) < 1.0
    assert position_bonus(f"{'x' * 500} web", ["web"]) == 0.0
    assert position_bonus("nothing", ["web"]) == 0.0


def test_snippet_windows_around_first_match() -> None:
    text = "a" * 200 + " web api " + "b" * 200

    snippet = make_snippet(text, ["web"], radius=20)

    assert snippet.startswith("...")
    assert snippet.endswith("...")
    assert "web" in snippet


class TestApplyCaps:
    def test_higher_score_first(self) -> None:
        results = apply_caps([_ranked("a", 1, score=1.0), _ranked("b", 1, score=5.0)], 10, 3)

        assert [item.session_id for item in results] == ["b", "a"]

    def test_recency_breaks_ties(self) -> None:
        older = _ranked("a", 1, timestamp="2025-01-01T00:00:00.000Z")
        newer = _ranked("b", 1, timestamp="2025-03-01T00:00:00.000Z")

        results = apply_caps([older, newer], 10, 3)

        assert [item.session_id for item in results] == ["b", "a"]

    def test_session_timestamp_used_when_message_has_none(self) -> None:
        older = _ranked("a", 1)
        newer = RankedMessage(**{**_ranked("b", 1).to_dict(), "session_timestamp": "2025-02-01T00:00:00Z"})

        results = apply_caps([older, newer], 10, 3)

        assert results[0].session_id == "b"

    def test_per_file_cap(self) -> None:
        candidates = [_ranked("a", position) for position in range(10)]
        candidates.append(_ranked("b", 0))

        results = apply_caps(candidates, 100, 3)

        assert sum(1 for item in results if item.session_id == "a") == 3
        assert any(item.session_id == "b" for item in results)

    def test_total_cap(self) -> None:
        candidates = [_ranked(f"s{index}", 0) for index in range(50)]

        assert len(apply_caps(candidates, 7, 3)) == 7

    def test_order_is_stable_for_equal_candidates(self) -> None:
        candidates = [_ranked("b", 2), _ranked("a", 5), _ranked("a", 1)]

        results = apply_caps(candidates, 10, 3)

        assert [(item.session_id, item.position) for item in results] == [("a", 1), ("a", 5), ("b", 2)]
