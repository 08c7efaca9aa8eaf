"""
Unit tests for the context preserver
"""
import time
from dataclasses import replace
from unittest.mock import AsyncMock, Mock

import pytest

from action_pipeline.config import EnrichmentConfig, PreservationOptions, SecurityPolicies
from action_pipeline.context_preserver import (
    ContextPreserver,
    calculate_context_size,
    sanitize_string,
    user_from_metadata
)
from action_pipeline.models import (
    ActionContext,
    SearchInfo,
    SearchResult,
    SourceInfo,
    UserInfo,
    ValidationOutcome
)
from action_pipeline.privacy import SensitiveDataScrubber


@pytest.fixture
def preserver():
    return ContextPreserver()


@pytest.fixture
def result():
    return SearchResult(
        id="r1",
        title="Quarterly report",
        url="https://example.com/report",
        metadata={
            "query_time": 0.012,
            "enhancement_time": 0.003,
            "original_index": 4,
            "page": 2,
            "user": {"id": "u1", "session_id": "s1", "permissions": ["read"]},
            "source": {"id": "idx-1", "version": "2.1"},
        }
    )


@pytest.fixture
def source():
    return SourceInfo(type="api", name="catalog")


def make_context(**overrides):
    context = ActionContext(
        query="report",
        timestamp=time.time(),
        source=SourceInfo(type="api", name="catalog"),
        search=SearchInfo(total_results=1, processing_time=0.0, result_index=0)
    )
    return replace(context, **overrides)


class TestCreateContext:
    """Test cases for create_context"""

    @pytest.mark.asyncio
    async def test_base_fields(self, preserver, result, source):
        """Test that base fields come from the result and query"""
        context = await preserver.create_context(result, "report", source)

        assert context.query == "report"
        assert context.source == source
        assert context.source is not source
        assert context.search.total_results == 1
        assert context.search.processing_time == 0.012
        assert context.search.result_index == 4
        assert context.search.page == 2
        assert context.performance is None
        assert context.user is None
        assert context.custom is None

    @pytest.mark.asyncio
    async def test_enrichment_flags(self, preserver, result, source):
        """Test performance, user and detailed source enrichment"""
        config = EnrichmentConfig(include_performance=True, include_user=True, include_detailed_source=True)

        context = await preserver.create_context(result, "report", source, config)

        assert context.performance.query_time == 0.012
        assert context.performance.transformation_time == 0.003
        assert context.user == UserInfo(id="u1", session_id="s1", permissions=["read"])
        assert context.source.id == "idx-1"
        assert context.source.version == "2.1"
        assert source.id is None

    @pytest.mark.asyncio
    async def test_custom_enrichers_merge(self, preserver, result, source):
        """Test that sync and async enricher outputs are merged"""
        async def async_enricher(context, result):
            return {"title": result.title}

        config = EnrichmentConfig(custom_enrichers=[lambda c, r: {"id": r.id}, async_enricher])

        context = await preserver.create_context(result, "report", source, config)

        assert context.custom == {"id": "r1", "title": "Quarterly report"}

    @pytest.mark.asyncio
    async def test_failing_enricher_is_skipped(self, preserver, result, source):
        """Test that one failing enricher does not block context creation"""
        broken = Mock(side_effect=RuntimeError("boom"))
        config = EnrichmentConfig(custom_enrichers=[broken, lambda c, r: {"ok": True}])

        context = await preserver.create_context(result, "report", source, config)

        broken.assert_called_once()
        assert context.custom == {"ok": True}

    @pytest.mark.asyncio
    async def test_user_with_extra_keys(self, preserver, result, source):
        """Test that unknown user keys are dropped and camelCase keys are accepted"""
        result.metadata["user"] = {"id": "u1", "name": "Ann", "sessionId": "s9", "permissions": ["read"]}

        context = await preserver.create_context(result, "report", source, EnrichmentConfig(include_user=True))

        assert context.user == UserInfo(id="u1", session_id="s9", permissions=["read"])

    @pytest.mark.asyncio
    async def test_user_without_id_is_skipped(self, preserver, result, source):
        result.metadata["user"] = {"name": "Ann"}

        context = await preserver.create_context(result, "report", source, EnrichmentConfig(include_user=True))

        assert context.user is None
        assert context.query == "report"


class TestPreserveContext:
    """Test cases for preserve_context"""

    @pytest.mark.asyncio
    async def test_valid_context_gets_unique_id(self, preserver, result, source):
        """Test that preserved contexts get unique ids and land in history"""
        seen = set()
        for _ in range(20):
            context = await preserver.create_context(result, "report", source)
            preserved = await preserver.preserve_context(context, PreservationOptions(validate=True))

            assert preserved.success is True
            assert preserved.error is None
            assert preserved.context.context_id not in seen
            seen.add(preserved.context.context_id)

        assert set(preserver.history) == seen

    @pytest.mark.asyncio
    async def test_secure_wrapper_fields(self, preserver):
        """Test validation, security and audit records"""
        preserved = await preserver.preserve_context(make_context())
        secure = preserved.context

        assert secure.query == "report"
        assert secure.validation.is_valid is True
        assert secure.validation.sanitized is False
        assert secure.security.trusted is True
        assert secure.security.origin == "catalog"
        assert secure.security.restrictions == ["no-user-context"]
        assert secure.audit.created_by == "ContextPreserver"
        assert secure.audit.chain == ["created"]
        assert preserved.size > 0
        assert preserved.processing_time >= 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"query": None},
        {"query": 42},
        {"timestamp": "yesterday"},
        {"timestamp": None},
        {"timestamp": True},
        {"source": SourceInfo(type="")},
        {"search": None},
    ])
    async def test_invalid_context_not_inserted(self, preserver, overrides):
        """Test that malformed contexts fail validation and never reach history"""
        preserved = await preserver.preserve_context(make_context(**overrides), PreservationOptions(validate=True))

        assert preserved.success is False
        assert "Context validation failed" in preserved.error
        assert preserved.context is None
        assert preserver.history == {}

    @pytest.mark.asyncio
    async def test_empty_query_only_warns(self, preserver):
        """Test that an empty query is a warning, not an error"""
        preserved = await preserver.preserve_context(make_context(query=""), PreservationOptions(validate=True))

        assert preserved.success is True
        assert "Query is empty" in preserved.warnings

    @pytest.mark.asyncio
    async def test_invalid_context_recorded_without_validate(self, preserver):
        """Test that validation failures are recorded when validate is off"""
        preserved = await preserver.preserve_context(make_context(timestamp="now"))

        assert preserved.success is True
        assert preserved.context.validation.is_valid is False
        assert preserved.context.validation.errors

    @pytest.mark.asyncio
    async def test_custom_validation_rules(self, preserver):
        """Test that custom rules contribute errors and warnings"""
        rules = [
            lambda c: ValidationOutcome(valid=True, warnings=["looks odd"]),
            AsyncMock(return_value=ValidationOutcome(valid=False, errors=["forbidden query"])),
        ]

        preserved = await preserver.preserve_context(
            make_context(), PreservationOptions(validate=True), EnrichmentConfig(validation_rules=rules)
        )

        assert preserved.success is False
        assert "forbidden query" in preserved.error
        assert preserved.warnings == ["looks odd"]

    @pytest.mark.asyncio
    async def test_failing_validation_rule_is_skipped(self, preserver):
        """Test that a raising rule becomes a warning"""
        rules = [Mock(side_effect=RuntimeError("rule broke"))]

        preserved = await preserver.preserve_context(
            make_context(), PreservationOptions(validate=True), EnrichmentConfig(validation_rules=rules)
        )

        assert preserved.success is True
        assert any("rule broke" in w for w in preserved.warnings)

    @pytest.mark.asyncio
    async def test_mapping_validation_rules(self, preserver):
        """Test that rules may answer with a plain mapping"""
        rules = [
            lambda c: {"valid": True, "errors": [], "warnings": ["mapped warning"]},
            lambda c: {"valid": False, "errors": ["mapped error"]},
        ]

        preserved = await preserver.preserve_context(
            make_context(), PreservationOptions(validate=True), EnrichmentConfig(validation_rules=rules)
        )

        assert preserved.success is False
        assert "mapped error" in preserved.error
        assert "mapped warning" in preserved.warnings

    @pytest.mark.asyncio
    async def test_rule_returning_none_is_skipped(self, preserver):
        """Test that a rule with an unusable answer becomes a warning"""
        rules = [lambda c: None, lambda c: {"valid": True}]

        preserved = await preserver.preserve_context(
            make_context(), PreservationOptions(validate=True), EnrichmentConfig(validation_rules=rules)
        )

        assert preserved.success is True
        assert any("NoneType" in w for w in preserved.warnings)

    @pytest.mark.asyncio
    async def test_sanitize(self, preserver):
        """Test that markup and script fragments are stripped"""
        context = make_context(
            query=" <b>report</b> javascript:alert(1) ",
            custom={"note": "<img onerror=x>", "nested": {"link": "JavaScript:go()"}, "count": 3}
        )

        preserved = await preserver.preserve_context(context, PreservationOptions(sanitize=True))
        secure = preserved.context

        assert secure.query == "breport/b alert(1)"
        assert secure.custom == {"note": "img x", "nested": {"link": "go()"}, "count": 3}
        assert secure.validation.sanitized is True
        assert secure.audit.chain == ["created", "sanitized"]
        assert context.query == " <b>report</b> javascript:alert(1) "

    @pytest.mark.asyncio
    async def test_restricted_fields_removed(self, preserver):
        """Test removal of restricted dotted field paths"""
        context = make_context(
            user=UserInfo(id="u1", session_id="s1"),
            custom={"token": "abc", "keep": 1}
        )
        policies = SecurityPolicies(restricted_fields=["custom.token", "user.session_id", "custom.missing.x"])

        preserved = await preserver.preserve_context(
            context, PreservationOptions(sanitize=True), EnrichmentConfig(security_policies=policies)
        )

        assert preserved.context.custom == {"keep": 1}
        assert preserved.context.user.session_id is None
        assert context.user.session_id == "s1"

    @pytest.mark.asyncio
    async def test_redact_sensitive_data(self):
        """Test that sanitization masks detected personal data when the policy asks for it"""
        scrubber = Mock(spec=SensitiveDataScrubber)
        scrubber.redact.side_effect = lambda text: text.replace("alice@example.com", "al*************om")
        scrubber.redact_mapping.side_effect = lambda data: {k: "***" for k in data}
        preserver = ContextPreserver(scrubber=scrubber)
        policies = SecurityPolicies(redact_sensitive_data=True)

        preserved = await preserver.preserve_context(
            make_context(query="mail alice@example.com", custom={"phone": "+1 650 253 0000"}),
            PreservationOptions(sanitize=True),
            EnrichmentConfig(security_policies=policies)
        )

        assert preserved.context.query == "mail al*************om"
        assert preserved.context.custom == {"phone": "***"}

    @pytest.mark.asyncio
    async def test_size_ceiling(self, preserver):
        """Test that oversized contexts are rejected"""
        preserved = await preserver.preserve_context(
            make_context(custom={"blob": "x" * 5000}), PreservationOptions(max_size=1000)
        )

        assert preserved.success is False
        assert "exceeds maximum" in preserved.error
        assert preserved.size > 1000
        assert preserver.history == {}

    @pytest.mark.asyncio
    async def test_default_size_ceiling(self):
        """Test the preserver-wide default ceiling"""
        preserver = ContextPreserver(default_max_size=200)

        preserved = await preserver.preserve_context(make_context(custom={"blob": "x" * 500}))

        assert preserved.success is False

    @pytest.mark.asyncio
    async def test_deep_clone_decouples(self, preserver):
        """Test that deep cloning decouples from caller-owned objects"""
        custom = {"tags": ["a"]}
        preserved = await preserver.preserve_context(make_context(custom=custom), PreservationOptions(deep_clone=True))

        custom["tags"].append("b")

        assert preserved.context.custom == {"tags": ["a"]}

    @pytest.mark.asyncio
    async def test_trust_and_permissions(self, preserver):
        """Test allow-listed origins and permission union"""
        policies = SecurityPolicies(allowed_origins=["docs"], required_permissions=["audit", "read"])
        context = make_context(user=UserInfo(id="u1", permissions=["read", "write"]))

        preserved = await preserver.preserve_context(context, enrichment_config=EnrichmentConfig(security_policies=policies))
        security = preserved.context.security

        assert security.trusted is False
        assert security.restrictions == ["untrusted-origin"]
        assert security.permissions == ["read", "write", "audit"]

    @pytest.mark.asyncio
    async def test_history_eviction(self):
        """Test that the oldest contexts are evicted beyond the history bound"""
        preserver = ContextPreserver(max_history_size=3)
        ids = []
        for _ in range(5):
            preserved = await preserver.preserve_context(make_context())
            ids.append(preserved.context.context_id)

        assert list(preserver.history) == ids[2:]
        assert preserver.get_preserved_context(ids[0]) is None

    @pytest.mark.asyncio
    async def test_never_raises(self, preserver):
        """Test that unexpected failures become error results"""
        preserver._secure = Mock(side_effect=RuntimeError("unexpected"))

        preserved = await preserver.preserve_context(make_context())

        assert preserved.success is False
        assert preserved.error == "unexpected"


class TestContextUpdates:
    """Test cases for lookup, update and enrichment"""

    @pytest.mark.asyncio
    async def test_update_context(self, preserver):
        """Test in-place updates stamp the audit record"""
        preserved = await preserver.preserve_context(make_context())
        context_id = preserved.context.context_id

        assert preserver.update_context(context_id, {"query": "new"}, modified_by="tester") is True

        updated = preserver.get_preserved_context(context_id)
        assert updated.query == "new"
        assert updated.audit.modified_by == "tester"
        assert updated.audit.modified_at is not None
        assert updated.audit.chain == ["created", "updated"]

    def test_update_unknown_context(self, preserver):
        """Test updating a context that is not in history"""
        assert preserver.update_context("ctx_missing", {"query": "x"}) is False

    @pytest.mark.asyncio
    async def test_update_unknown_field(self, preserver):
        """Test that unknown field names are rejected"""
        preserved = await preserver.preserve_context(make_context())

        with pytest.raises(ValueError):
            preserver.update_context(preserved.context.context_id, {"audit": None})

    @pytest.mark.asyncio
    async def test_release_context(self, preserver):
        """Test that releasing appends to the audit chain once"""
        preserved = await preserver.preserve_context(make_context())
        context_id = preserved.context.context_id

        assert preserver.release_context(context_id) is True
        assert preserver.release_context(context_id) is True
        assert preserver.get_preserved_context(context_id).audit.chain == ["created", "released"]
        assert preserver.release_context("ctx_missing") is False

    def test_enrich_context(self, preserver):
        """Test enrichment returns a new context with merged custom data"""
        context = make_context(custom={"a": 1})

        enriched = preserver.enrich_context(
            context,
            {"b": "<script>x</script>"},
            EnrichmentConfig(security_policies=SecurityPolicies(sanitize_custom_data=True))
        )

        assert enriched.custom == {"a": 1, "b": "scriptx/script"}
        assert context.custom == {"a": 1}

    def test_extract_metadata(self, preserver):
        """Test the compact metadata view"""
        metadata = preserver.extract_metadata(make_context(custom={"k": 1}))

        assert metadata["query"] == "report"
        assert metadata["source_type"] == "api"
        assert metadata["has_user"] is False
        assert metadata["custom_data_keys"] == ["k"]

    @pytest.mark.asyncio
    async def test_statistics_and_clear(self, preserver):
        """Test history statistics and clearing"""
        assert preserver.get_statistics()["total_preserved"] == 0

        await preserver.preserve_context(make_context())
        await preserver.preserve_context(make_context())
        stats = preserver.get_statistics()

        assert stats["total_preserved"] == 2
        assert stats["average_size"] > 0
        assert "oldest_context" in stats and "newest_context" in stats
        assert preserver.clear_history() == 2
        assert preserver.history == {}


class TestHelpers:
    """Test cases for module helpers"""

    def test_sanitize_string(self):
        assert sanitize_string("  <a onclick=run()>hi</a> ") == "a run()hi/a"

    def test_size_fallback(self):
        """Test the approximation used when serialisation fails"""
        circular = {}
        circular["self"] = circular

        assert calculate_context_size(circular) == len(str(circular)) * 2

    def test_user_from_metadata(self):
        user = UserInfo(id="u1")

        assert user_from_metadata(user) is user
        assert user_from_metadata({"id": 7, "preferences": "dark"}) == UserInfo(id="7")
        assert user_from_metadata({"session_id": "s1"}) is None
        assert user_from_metadata(["u1"]) is None
