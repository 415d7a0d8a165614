"""Tests for the project context agent."""

from __future__ import annotations

import json

import pytest

from conftest import StubLLM
from tracker.context.agent import (
    FALLBACK_QUESTIONS,
    SEED_QUESTION,
    ContextAgent,
    fallback_question,
    parse_progress_analysis,
    progress_state,
    scrub_queries,
    scrub_query,
)
from tracker.db.models import ContextEntry
from tracker.discovery.transformer import DiscoveryCandidate
from tracker.errors import BackendError, NotFoundError, ProgressAnalysisFailed


def _analysis(phase: str, pct) -> str:
    return json.dumps({"phase": phase, "progressPercentage": pct, "reasoning": "said so"})


# ------------------------------------------------------------------
# Query scrubbing
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("latest AI video tools 2024", "AI video tools"),
        ("speech to text models this year", "speech to text models"),
        ("New, emerging diffusion research 1999", "diffusion research"),
        ("GPT-4 video editing", "GPT-4 video editing"),
        ("speech models 3000 edition", "speech models edition"),
        ("2025", ""),
    ],
)
def test_scrub_query(raw, expected):
    assert scrub_query(raw) == expected


def test_scrubbed_queries_never_contain_years_or_temporal_words():
    raw = [
        "current state of video generation 2023",
        "Upcoming speech-to-text APIs in 2026",
        "today: modern clip editors",
        "recent RECENT Latest 1987 work",
    ]
    for query in scrub_queries(raw):
        lowered = query.lower()
        assert not any(ch.isdigit() for ch in lowered)
        for word in ("current", "upcoming", "today", "modern", "recent", "latest"):
            assert word not in lowered


def test_scrub_queries_dedupes_caps_and_skips_junk():
    raw = ["video models", "Video Models", None, 42, "", "2024", "a", "b", "c", "d", "e"]
    assert scrub_queries(raw) == ["video models", "a", "b", "c", "d"]


# ------------------------------------------------------------------
# Small helpers
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    "phase, expected",
    [
        ("Initial planning", FALLBACK_QUESTIONS[0][1]),
        ("active development", FALLBACK_QUESTIONS[1][1]),
        ("Beta testing", FALLBACK_QUESTIONS[2][1]),
        ("launch prep", FALLBACK_QUESTIONS[3][1]),
        ("completed", FALLBACK_QUESTIONS[4][1]),
        ("research", SEED_QUESTION),
        (None, SEED_QUESTION),
    ],
)
def test_fallback_question(phase, expected):
    assert fallback_question(phase) == expected


@pytest.mark.parametrize("pct, state", [(0, "Not Started"), (1, "In Progress"), (100, "Completed")])
def test_progress_state(pct, state):
    assert progress_state(pct) == state


def test_parse_progress_analysis_clamps():
    assert parse_progress_analysis(_analysis("testing", 150)).percentage == 100
    assert parse_progress_analysis(_analysis("testing", -3)).percentage == 0
    assert parse_progress_analysis(_analysis("testing", "42.6")).percentage == 43


@pytest.mark.parametrize(
    "raw",
    [
        "no json",
        json.dumps({"progressPercentage": 10}),
        json.dumps({"phase": "  ", "progressPercentage": 10}),
        json.dumps({"phase": "dev", "progressPercentage": "lots"}),
        json.dumps({"phase": "dev", "progressPercentage": True}),
    ],
)
def test_parse_progress_analysis_rejects(raw):
    with pytest.raises(ProgressAnalysisFailed):
        parse_progress_analysis(raw)


# ------------------------------------------------------------------
# Context log
# ------------------------------------------------------------------


def test_get_or_create_context_seeds_once(repo, project):
    agent = ContextAgent(repo, StubLLM())
    first = agent.get_or_create_context(project.id)
    second = agent.get_or_create_context(project.id)

    assert first.id == second.id
    assert len(second.entries) == 1
    seed = second.entries[0]
    assert (seed.type, seed.content, seed.metadata) == ("agent_question", SEED_QUESTION, {"seed": True})
    assert (second.current_phase, second.progress_percentage) == ("initial", 0)


def test_get_or_create_context_unknown_project(repo):
    with pytest.raises(NotFoundError):
        ContextAgent(repo, StubLLM()).get_or_create_context("missing")


def test_add_user_update_asks_without_rescoring(repo, project):
    llm = StubLLM("What did you ship this week?")
    context, question = ContextAgent(repo, llm).add_user_update(project.id, "Finished the cutter")

    assert question == "What did you ship this week?"
    assert len(llm.calls) == 1
    assert [e.type for e in context.entries] == ["agent_question", "user_update", "agent_question"]
    assert context.progress_percentage == 0


def test_add_user_response_links_named_question(repo, project):
    agent = ContextAgent(repo, StubLLM(_analysis("initial", 5), "Next?"))
    seed = agent.get_or_create_context(project.id).entries[0]

    context, _ = agent.add_user_response(project.id, seed.id, "Just started")

    response = context.entries_of("user_response")[0]
    assert response.metadata["question_id"] == seed.id
    assert response.metadata["question_content"] == SEED_QUESTION


def test_add_user_response_unknown_question_uses_latest(repo, project):
    agent = ContextAgent(repo, StubLLM(_analysis("initial", 5), "Q2", _analysis("initial", 6), "Q3"))
    agent.add_user_response(project.id, None, "first")
    context, _ = agent.add_user_response(project.id, "no-such-id", "second")

    latest_question = [e for e in context.entries if e.type == "agent_question"][-2]
    response = context.entries_of("user_response")[-1]
    assert latest_question.content == "Q2"
    assert response.metadata["question_id"] == latest_question.id


def test_add_user_response_without_any_question_is_general(repo, project):
    repo.create_context(project.id, ContextEntry(id="u0", type="user_update", content="hello"))
    agent = ContextAgent(repo, StubLLM(_analysis("initial", 0), "Q?"))

    context, _ = agent.add_user_response(project.id, None, "free text")

    response = context.entries_of("user_response")[0]
    assert response.metadata["question_id"] == "general"
    assert "question_content" not in response.metadata


def test_add_user_response_updates_progress_and_milestones(repo, project):
    agent = ContextAgent(repo, StubLLM(_analysis("development", 40), "How is the UI?"))

    context, question = agent.add_user_response(project.id, None, "Core pipeline works")

    assert question == "How is the UI?"
    assert (context.current_phase, context.progress_percentage) == ("development", 40)
    [milestone] = context.entries_of("milestone")
    assert milestone.content == "Project reached 40% completion in the development phase."
    assert milestone.metadata["previous_percentage"] == 0
    stored = repo.get_project(project.id)
    assert stored.progress == "In Progress"
    assert [m.description for m in stored.milestones] == ["Entered development phase"]
    # order: seed, response, milestone, follow-up
    assert [e.type for e in context.entries] == [
        "agent_question", "user_response", "milestone", "agent_question",
    ]


def test_small_progress_change_adds_no_milestone(repo, project):
    agent = ContextAgent(
        repo,
        StubLLM(_analysis("development", 40), "Q1", _analysis("development", 45), "Q2"),
    )
    agent.add_user_response(project.id, None, "a")
    context, _ = agent.add_user_response(project.id, None, "b")

    assert context.progress_percentage == 45
    assert len(context.entries_of("milestone")) == 1
    assert len(repo.get_project(project.id).milestones) == 1


def test_progress_drop_of_ten_is_a_milestone(repo, project):
    agent = ContextAgent(
        repo,
        StubLLM(_analysis("testing", 60), "Q1", _analysis("development", 50), "Q2"),
    )
    agent.add_user_response(project.id, None, "a")
    context, _ = agent.add_user_response(project.id, None, "found a big bug")
    assert len(context.entries_of("milestone")) == 2


def test_phase_milestone_matches_whole_phase_name(repo, project):
    agent = ContextAgent(
        repo,
        StubLLM(_analysis("pre-launch", 80), "Q1", _analysis("launch", 85), "Q2"),
    )
    agent.add_user_response(project.id, None, "beta is out")
    agent.add_user_response(project.id, None, "public release")

    assert [m.description for m in repo.get_project(project.id).milestones] == [
        "Entered pre-launch phase",
        "Entered launch phase",
    ]


def test_failed_progress_analysis_keeps_response(repo, project):
    agent = ContextAgent(repo, StubLLM("I cannot answer that", "Next?"))

    context, question = agent.add_user_response(project.id, None, "Half done")

    assert question == "Next?"
    assert context.entries_of("user_response")[0].content == "Half done"
    assert context.progress_percentage == 0
    assert context.entries_of("milestone") == []
    assert repo.get_project(project.id).progress == "Not Started"


def test_update_progress_raises_on_backend_error(repo, project):
    agent = ContextAgent(repo, StubLLM(BackendError("down")))
    context = agent.get_or_create_context(project.id)
    with pytest.raises(ProgressAnalysisFailed):
        agent.update_progress(context, "text")


def test_add_feedback_entry(repo, project):
    agent = ContextAgent(repo, StubLLM())
    entry = agent.add_feedback(project.id, "d1", "Video model", "positive", notes="great")

    assert entry.type == "feedback"
    assert entry.content == 'Positive feedback on discovery: "Video model" - Notes: great'
    assert entry.metadata == {"discovery_id": "d1", "feedback_type": "positive", "notes": "great"}

    negative = agent.add_feedback(project.id, "d2", "Old news", "negative")
    assert negative.content == 'Negative feedback on discovery: "Old news"'


# ------------------------------------------------------------------
# Follow-up questions
# ------------------------------------------------------------------


def test_follow_up_falls_back_when_backend_fails(repo, project):
    agent = ContextAgent(repo, StubLLM(BackendError("timeout")))
    context = agent.get_or_create_context(project.id)

    question = agent.generate_follow_up_question(context)

    assert question == FALLBACK_QUESTIONS[0][1]
    last = repo.get_context(project.id).entries[-1]
    assert last.type == "agent_question"
    assert last.metadata["generated"] is False


def test_follow_up_empty_answer_falls_back(repo, project):
    agent = ContextAgent(repo, StubLLM('  ""  '))
    question = agent.generate_follow_up_question(agent.get_or_create_context(project.id))
    assert question == FALLBACK_QUESTIONS[0][1]


def test_follow_up_prompt_mentions_useful_discoveries(repo, project, store):
    d = store.upsert(project.id, DiscoveryCandidate(title="Whisper v4", source="https://w.example"))
    store.record_feedback(d.id, {"useful": True})
    llm = StubLLM("Have you tried Whisper v4?")
    agent = ContextAgent(repo, llm)

    agent.generate_follow_up_question(agent.get_or_create_context(project.id))

    assert "Whisper v4" in llm.calls[0][1]["content"]
    meta = repo.get_context(project.id).entries[-1].metadata
    assert (meta["generated"], meta["useful_discoveries_count"]) == (True, 1)


# ------------------------------------------------------------------
# Contextual search queries
# ------------------------------------------------------------------


def test_contextual_queries_scrubbed_and_capped(repo, project):
    reply = json.dumps({"queries": [
        "latest video generation models 2024", "speech to text", "Speech To Text",
        "clip editing", "auto cut", "highlight detection", "scene detection",
    ]})
    queries = ContextAgent(repo, StubLLM(reply)).generate_contextual_search_queries(project.id)
    assert queries == [
        "video generation models", "speech to text", "clip editing", "auto cut",
        "highlight detection",
    ]


def test_contextual_queries_from_quoted_prose(repo, project):
    reply = 'Try "new diffusion tools" and "clip editing SDK".'
    queries = ContextAgent(repo, StubLLM(reply)).generate_contextual_search_queries(project.id)
    assert queries == ["diffusion tools", "clip editing SDK"]


def test_contextual_queries_prompt_includes_feedback(repo, project, store):
    d = store.upsert(project.id, DiscoveryCandidate(title="Old tool", source="https://o.example"))
    store.record_feedback(d.id, {"not_useful": True})
    llm = StubLLM(json.dumps({"queries": ["video"]}))
    ContextAgent(repo, llm).generate_contextual_search_queries(project.id)
    assert "Old tool" in llm.calls[0][1]["content"]


@pytest.mark.parametrize("reply", [json.dumps({"queries": ["2024", "latest"]}), "nothing", BackendError("x")])
def test_contextual_queries_unusable_raises(repo, project, reply):
    with pytest.raises(BackendError):
        ContextAgent(repo, StubLLM(reply)).generate_contextual_search_queries(project.id)
