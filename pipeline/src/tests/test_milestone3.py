"""
Milestone 3 Scenarios: Generation + Validation
Draft creation, neighborhood targeting, generate-once, manual requests,
validation fail-soft and validate-once.
"""

from __future__ import annotations
import json
import sys
from pathlib import Path

import pytest

# Set up paths before importing pipeline modules
REPO_ROOT = Path(__file__).parent.parent.parent.parent
sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    from pipeline.src.kb import store as st
    from pipeline.src import ops_log

    monkeypatch.setattr(st, "DB_PATH", tmp_path / "newsroom.sqlite")
    monkeypatch.setattr(ops_log, "OPS_LOG_PATH", tmp_path / "pipeline-log.md")
    monkeypatch.setenv("ORACLE_BACKOFF", "0")
    monkeypatch.delenv("DEFAULT_NEIGHBORHOOD", raising=False)
    yield tmp_path


def _scored_item(title: str, score: float = 0.8, neighborhoods=None, source_id: str = "praha4",
                 category: str = "transport"):
    from pipeline.src.kb import store
    from pipeline.src.models import RawItem
    item = RawItem(
        source_id=source_id,
        title=title,
        content_text=f"{title}. Residents should plan ahead for the changes.",
        url=f"https://example.com/{title.replace(' ', '-').lower()}",
    )
    store.store_item(item)
    store.update_item_score(item.id, score, category, neighborhoods or [], "test")
    return store.get_item(item.id)


def _article_json(title="Metro closure affects Karlin commuters", body="Full article text. " * 20,
                  summary="Line C closes on Sunday night.", confidence=0.8, body_key="body"):
    data = {"title": title, body_key: body, "summary": summary}
    if confidence is not None:
        data["confidence"] = confidence
    return json.dumps(data)


def _validation_json(confidence=0.9, accuracy=True, relevance=True, safety=True, quality=True, flags=None):
    return json.dumps({
        "confidence": confidence,
        "checks": {"accuracy": accuracy, "relevance": relevance, "safety": safety, "quality": quality},
        "flags": flags or [],
        "notes": "Looks good.",
    })


class TestScenario31Generation:
    """Scenario 3.1: Qualified items become drafts in review."""

    def test_draft_created_in_review(self):
        from pipeline.src.generate.generator import Generator
        from pipeline.src.kb import store

        item = _scored_item("Metro line C closure", neighborhoods=["karlin", "zizkov"])
        result = Generator(llm_caller=lambda p: _article_json(), max_workers=1).generate_batch([item])

        assert result.generated == 1
        assert result.errors == []
        content = store.get_content(result.content[0].id)
        assert content.status == "review"
        assert content.created_by == "ai-generator"
        assert content.source_item_id == item.id
        assert content.neighborhood_id == "karlin"
        assert content.category == "transport"
        assert content.ai_confidence == 0.8
        assert content.summary == "Line C closes on Sunday night."
        assert content.validated_at is None

    def test_content_alias_and_title_cap(self):
        from pipeline.src.generate.generator import Generator

        item = _scored_item("Long headline story")
        caller = lambda p: _article_json(title="X" * 120, body_key="content", confidence=1.4)
        result = Generator(llm_caller=caller, max_workers=1).generate_batch([item])
        draft = result.content[0]
        assert len(draft.title) == 80
        assert draft.body.startswith("Full article text.")
        assert draft.ai_confidence == 1.0

    def test_missing_confidence_is_null(self):
        from pipeline.src.generate.generator import Generator
        item = _scored_item("No confidence reported")
        result = Generator(llm_caller=lambda p: _article_json(confidence=None), max_workers=1).generate_batch([item])
        assert result.content[0].ai_confidence is None

    def test_neighborhood_fallbacks(self):
        from pipeline.src.collect import source_registry
        from pipeline.src.generate.generator import Generator
        from pipeline.src.models import Source

        source_registry.upsert_source(
            Source(id="praha2", name="Praha 2", url="https://praha2.example/rss", neighborhood_id="praha2")
        )
        from_source = _scored_item("Story from Praha 2 source", source_id="praha2")
        unknown = _scored_item("Story from unknown source", source_id="elsewhere")

        generator = Generator(llm_caller=lambda p: _article_json(), max_workers=2)
        assert generator.target_neighborhood(from_source) == "praha2"
        assert generator.target_neighborhood(unknown) == "praha4"
        print("PASS: Scenario 3.1: drafts created in review")


class TestScenario32GenerationFailure:
    """Scenario 3.2: A failed generation creates no record and is reported."""

    def test_invalid_json_creates_nothing(self):
        from pipeline.src.generate.generator import Generator
        from pipeline.src.kb import store

        bad = _scored_item("Bad generation story")
        good = _scored_item("Good generation story")

        def caller(prompt):
            return "Sorry, I cannot help" if "Bad generation" in prompt else _article_json()

        result = Generator(llm_caller=caller, max_workers=2).generate_batch([bad, good])
        assert result.generated == 1
        assert len(result.errors) == 1
        assert bad.id in result.errors[0]
        assert not store.content_exists_for_item(bad.id)
        assert store.content_exists_for_item(good.id)

    def test_empty_body_creates_nothing(self):
        from pipeline.src.generate.generator import Generator
        from pipeline.src.kb import store
        item = _scored_item("Empty body story")
        result = Generator(llm_caller=lambda p: _article_json(body="   "), max_workers=1).generate_batch([item])
        assert result.generated == 0
        assert len(result.errors) == 1
        assert not store.content_exists_for_item(item.id)

    def test_oracle_down_creates_nothing(self):
        from pipeline.src.generate.generator import Generator

        def down(prompt):
            raise TimeoutError("no answer")

        item = _scored_item("Oracle down story")
        result = Generator(llm_caller=down, max_workers=1).generate_batch([item])
        assert result.generated == 0
        assert "OracleError" in result.errors[0]

    def test_non_finite_confidence_creates_nothing(self):
        from pipeline.src.generate.generator import Generator
        from pipeline.src.kb import store

        item = _scored_item("NaN confidence story")
        caller = lambda p: _article_json().replace('"confidence": 0.8', '"confidence": NaN')
        result = Generator(llm_caller=caller, max_workers=1).generate_batch([item])
        assert result.generated == 0
        assert len(result.errors) == 1
        assert not store.content_exists_for_item(item.id)
        assert store.get_generation_attempts(item.id) == 1
        print("PASS: Scenario 3.2: failed generation leaves no record")


class TestScenario33GenerateOnce:
    """Scenario 3.3: An item never gets two drafts."""

    def test_second_batch_skips(self):
        from pipeline.src.generate.generator import Generator

        item = _scored_item("Generate exactly once")
        generator = Generator(llm_caller=lambda p: _article_json(), max_workers=1)
        assert generator.generate_batch([item]).generated == 1
        second = generator.generate_batch([item])
        assert second.generated == 0
        assert second.skipped == 1
        assert second.errors == []

    def test_generate_pending_best_first(self):
        from pipeline.src.generate.generator import Generator

        low = _scored_item("Below threshold story", score=0.4)
        mid = _scored_item("Qualified middle story", score=0.7)
        top = _scored_item("Qualified top story", score=0.95)

        seen = []

        def caller(prompt):
            seen.append(prompt)
            return _article_json()

        result = Generator(llm_caller=caller, max_workers=1).generate_pending(limit=10)
        assert result.generated == 2
        assert [c.source_item_id for c in result.content] == [top.id, mid.id]
        assert not any(low.title in p for p in seen)

    def test_failing_item_does_not_block_others(self):
        from pipeline.src.generate.generator import Generator
        from pipeline.src.kb import store

        failing = _scored_item("Always failing top story", score=0.95)
        other = _scored_item("Ordinary qualified story", score=0.7)

        def caller(prompt):
            return "not an article" if "Always failing" in prompt else _article_json()

        generator = Generator(llm_caller=caller, max_workers=1)
        first = generator.generate_pending(limit=1)
        assert first.generated == 0
        assert store.get_generation_attempts(failing.id) == 1

        second = generator.generate_pending(limit=1)
        assert second.generated == 1
        assert second.content[0].source_item_id == other.id

    def test_item_dropped_after_max_attempts(self, monkeypatch):
        from pipeline.src.generate.generator import Generator
        from pipeline.src.kb import store

        monkeypatch.setenv("GENERATION_MAX_ATTEMPTS", "2")
        item = _scored_item("Never generates cleanly", score=0.9)
        calls = []

        def caller(prompt):
            calls.append(prompt)
            return "not an article"

        generator = Generator(llm_caller=caller, max_workers=1)
        generator.generate_pending(limit=5)
        generator.generate_pending(limit=5)
        assert store.get_generation_attempts(item.id) == 2

        calls.clear()
        third = generator.generate_pending(limit=5)
        assert third.generated == 0
        assert third.errors == []
        assert calls == []

    def test_manual_request(self):
        from pipeline.src.generate.generator import Generator
        from pipeline.src.kb import store

        prompts = []

        def caller(prompt):
            prompts.append(prompt)
            return _article_json(title="Street festival this weekend")

        content = Generator(llm_caller=caller).generate_manual("vinohrady", "events", "Festival on Namesti Miru")
        assert content.created_by == "manual-request"
        assert content.source_item_id is None
        assert "Festival on Namesti Miru" in prompts[0]
        stored = store.get_content(content.id)
        assert stored.status == "review"
        assert stored.neighborhood_id == "vinohrady"

    def test_manual_request_failure_raises(self):
        from pipeline.src.errors import GenerationError
        from pipeline.src.generate.generator import Generator
        with pytest.raises(GenerationError):
            Generator(llm_caller=lambda p: "nope").generate_manual("praha4", "events", "")
        print("PASS: Scenario 3.3: generate once, manual requests")


def _draft(title="Metro closure affects Karlin commuters", confidence=None):
    from pipeline.src.kb import store
    from pipeline.src.models import GeneratedContent
    content = GeneratedContent(
        title=title,
        body="Full article text. " * 20,
        category="transport",
        neighborhood_id="karlin",
        ai_confidence=confidence,
    )
    store.insert_content(content)
    return store.get_content(content.id)


class TestScenario34Validation:
    """Scenario 3.4: Validation writes its result and never touches status."""

    def test_result_persisted(self):
        from pipeline.src.kb import store
        from pipeline.src.validate.validator import Validator

        draft = _draft()
        result = Validator(llm_caller=lambda p: _validation_json(0.92), max_workers=1).validate_batch([draft])
        assert result.validated == 1
        vr = result.results[0]
        assert vr.confidence == 0.92
        assert vr.checks.accuracy and vr.checks.safety
        assert vr.flags == []

        stored = store.get_content(draft.id)
        assert stored.status == "review"
        assert stored.ai_confidence == 0.92
        assert stored.validated_at is not None
        assert stored.validation_checks == {"accuracy": True, "relevance": True, "safety": True, "quality": True}
        assert stored.validation_flags == []

    def test_confidence_clamped(self):
        from pipeline.src.validate.validator import Validator
        draft = _draft()
        result = Validator(llm_caller=lambda p: _validation_json(3.0), max_workers=1).validate_batch([draft])
        assert result.results[0].confidence == 1.0

    def test_validate_once(self):
        from pipeline.src.validate.validator import Validator
        draft = _draft()
        validator = Validator(llm_caller=lambda p: _validation_json(0.9), max_workers=1)
        assert validator.validate_batch([draft]).validated == 1
        assert validator.validate_batch([draft]).validated == 0

    def test_validate_pending(self):
        from pipeline.src.validate.validator import Validator
        drafts = [_draft(f"Draft number {i} for review") for i in range(3)]
        validator = Validator(llm_caller=lambda p: _validation_json(0.5), max_workers=2)
        assert validator.validate_pending().validated == 3
        assert validator.validate_pending().validated == 0
        print("PASS: Scenario 3.4: validation persisted, status untouched")


class TestScenario35ValidationFallback:
    """Scenario 3.5: Unusable validator output gives the manual-review default."""

    def test_malformed_output(self):
        from pipeline.src.kb import store
        from pipeline.src.validate.validator import Validator

        draft = _draft()
        result = Validator(llm_caller=lambda p: "looks fine to me", max_workers=1).validate_batch([draft])
        vr = result.results[0]
        assert vr.fallback_used
        assert vr.confidence == 0.3
        assert vr.flags == ["validation_error"]
        assert not any(vr.checks.model_dump().values())
        assert vr.notes == "Validation failed - requires manual review"
        assert len(result.errors) == 1

        stored = store.get_content(draft.id)
        assert stored.status == "review"
        assert stored.validation_flags == ["validation_error"]

    def test_missing_confidence(self):
        from pipeline.src.validate.validator import Validator
        draft = _draft()
        result = Validator(llm_caller=lambda p: '{"checks": {"accuracy": true}}', max_workers=1).validate_batch([draft])
        assert result.results[0].confidence == 0.3

    def test_non_finite_confidence_stays_in_review(self, tmp_path, monkeypatch):
        from pipeline.src.kb import store
        from pipeline.src.publish import approval_gate, publisher
        from pipeline.src.validate.validator import Validator

        monkeypatch.setattr(publisher, "PUBLISH_DIR", tmp_path / "published")
        draft = _draft()
        caller = lambda p: _validation_json().replace('"confidence": 0.9', '"confidence": NaN')
        result = Validator(llm_caller=caller, max_workers=1).validate_batch([draft])
        vr = result.results[0]
        assert vr.fallback_used
        assert vr.confidence == 0.3
        assert vr.flags == ["validation_error"]

        gate = approval_gate.evaluate(result.results)
        assert gate.published == 0
        assert gate.kept_for_review == 1
        assert store.get_content(draft.id).status == "review"
        print("PASS: Scenario 3.5: validation fail-soft")
