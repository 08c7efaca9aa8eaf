"""
Context preservation for the action pipeline
Builds, validates, sanitizes and secures the provenance snapshot of an action
and keeps a bounded history of preserved contexts
"""
import copy
import json
import logging
import re
import time
from dataclasses import fields, replace
from typing import Any, Dict, List, Optional, Pattern

from .config import (
    DEFAULT_MAX_CONTEXT_SIZE,
    DEFAULT_MAX_HISTORY_SIZE,
    EnrichmentConfig,
    PreservationOptions,
    SecurityPolicies
)
from .models import (
    ActionContext,
    AuditRecord,
    ContextPreservationResult,
    PerformanceMetrics,
    SearchInfo,
    SearchResult,
    SecureActionContext,
    SecurityRecord,
    SourceInfo,
    UserInfo,
    ValidationOutcome,
    ValidationRecord
)
from .privacy import SensitiveDataScrubber
from .utils import elapsed_since, generate_id, resolve

logger = logging.getLogger(__name__)

# Markup and script fragments stripped during sanitization
UNSAFE_PATTERNS: List[Pattern[str]] = [
    re.compile(r'[<>]'),
    re.compile(r'javascript:', re.IGNORECASE),
    re.compile(r'on\w+=', re.IGNORECASE),
]

CONTEXT_FIELDS = {f.name for f in fields(ActionContext)}
USER_FIELDS = {f.name for f in fields(UserInfo)}

CAMEL_CASE_BOUNDARY: Pattern[str] = re.compile(r'(?<!^)(?=[A-Z])')


def user_from_metadata(user: Any) -> Optional[UserInfo]:
    """Build a UserInfo from result metadata, keeping only known fields

    camelCase keys such as ``sessionId`` are accepted. Returns None when the
    record has no usable id.
    """
    if isinstance(user, UserInfo):
        return user
    if not isinstance(user, dict):
        logger.warning(f"Ignoring user metadata of type {type(user).__name__}")
        return None

    known = {}
    for key, value in user.items():
        name = CAMEL_CASE_BOUNDARY.sub('_', str(key)).lower()
        if name in USER_FIELDS:
            known[name] = value

    if known.get("id") in (None, ""):
        logger.warning("Ignoring user metadata without an id")
        return None

    known["id"] = str(known["id"])
    if not isinstance(known.get("permissions", []), (list, tuple)):
        known.pop("permissions")
    if not isinstance(known.get("preferences", {}), dict):
        known.pop("preferences")
    if "permissions" in known:
        known["permissions"] = list(known["permissions"])

    return UserInfo(**known)


def sanitize_string(value: str) -> str:
    """Strip HTML-like and script-protocol fragments from a string"""
    for pattern in UNSAFE_PATTERNS:
        value = pattern.sub('', value)
    return value.strip()


def sanitize_custom_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively sanitize every string value of a mapping"""
    sanitized: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, str):
            sanitized[key] = sanitize_string(value)
        elif isinstance(value, dict):
            sanitized[key] = sanitize_custom_data(value)
        elif isinstance(value, list):
            sanitized[key] = [sanitize_string(v) if isinstance(v, str) else v for v in value]
        else:
            sanitized[key] = value
    return sanitized


def calculate_context_size(context: Any) -> int:
    """
    Size of the context in bytes, measured as its UTF-8 JSON serialisation.

    When the context cannot be serialised, falls back to an approximation
    of two bytes per character of its string form (UTF-16 sizing).
    """
    try:
        data = context.to_dict() if hasattr(context, "to_dict") else context
        return len(json.dumps(data, default=_json_default).encode('utf-8'))
    except (TypeError, ValueError, RecursionError) as e:
        logger.debug(f"Context serialisation failed, approximating size: {e}")
        return len(str(context)) * 2


def _json_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class ContextPreserver:
    """Creates and preserves secured action contexts"""

    def __init__(
        self,
        max_history_size: int = DEFAULT_MAX_HISTORY_SIZE,
        default_max_size: int = DEFAULT_MAX_CONTEXT_SIZE,
        scrubber: Optional[SensitiveDataScrubber] = None
    ):
        self.history: Dict[str, SecureActionContext] = {}
        self.max_history_size = max_history_size
        self.default_max_size = default_max_size
        self._scrubber = scrubber

    @property
    def scrubber(self) -> SensitiveDataScrubber:
        # Detectors are only built when redaction is first requested
        if self._scrubber is None:
            self._scrubber = SensitiveDataScrubber()
        return self._scrubber

    async def create_context(
        self,
        result: SearchResult,
        query: str,
        source_info: SourceInfo,
        enrichment_config: Optional[EnrichmentConfig] = None
    ) -> ActionContext:
        """Create an action context from a search result and query"""
        config = enrichment_config or EnrichmentConfig()
        metadata = result.metadata or {}

        context = ActionContext(
            query=query,
            timestamp=time.time(),
            source=replace(source_info),
            search=SearchInfo(
                total_results=1,
                processing_time=metadata.get("query_time") or 0,
                result_index=metadata.get("original_index") or 0,
                page=metadata.get("page"),
                filters=metadata.get("filters")
            )
        )

        if config.include_performance and metadata:
            context.performance = PerformanceMetrics(
                query_time=metadata.get("query_time") or 0,
                transformation_time=metadata.get("enhancement_time") or 0,
                render_time=0  # filled in by the UI layer
            )

        if config.include_user and (user := metadata.get("user")):
            context.user = user_from_metadata(user)

        if config.include_detailed_source and isinstance(detailed := metadata.get("source"), dict):
            for key, value in detailed.items():
                if hasattr(context.source, key):
                    setattr(context.source, key, value)

        if config.custom_enrichers:
            custom: Dict[str, Any] = {}
            for enricher in config.custom_enrichers:
                try:
                    custom.update(await resolve(enricher(context, result)) or {})
                except Exception as e:
                    logger.warning(f"Custom enricher {getattr(enricher, '__name__', enricher)} failed: {e}")
            if custom:
                context.custom = custom

        return context

    async def preserve_context(
        self,
        context: ActionContext,
        options: Optional[PreservationOptions] = None,
        enrichment_config: Optional[EnrichmentConfig] = None
    ) -> ContextPreservationResult:
        """Validate, sanitize, size-check and secure a context, then record it"""
        options = options or PreservationOptions()
        config = enrichment_config or EnrichmentConfig()
        start = time.perf_counter()
        result = ContextPreservationResult()

        try:
            processed = copy.deepcopy(context) if options.deep_clone else copy.copy(context)

            validation = await self._validate(processed, config)
            if not validation.valid and options.validate:
                result.error = f"Context validation failed: {', '.join(validation.errors)}"
                result.warnings = validation.warnings
                logger.warning(result.error)
                return result

            if options.sanitize:
                processed = self._sanitize(processed, config.security_policies)

            size = calculate_context_size(processed)
            max_size = options.max_size or self.default_max_size
            if size > max_size:
                result.error = f"Context size ({size} bytes) exceeds maximum ({max_size} bytes)"
                result.size = size
                logger.warning(result.error)
                return result

            secure = self._secure(processed, validation, options.sanitize, config.security_policies)
            self._add_to_history(secure)

            result.success = True
            result.context = secure
            result.size = size
            result.warnings = validation.warnings
            logger.debug(f"Context preserved: {secure.context_id} ({size} bytes)")

        except Exception as e:
            result.error = str(e)
            logger.error(f"Context preservation failed: {e}", exc_info=True)
        finally:
            result.processing_time = elapsed_since(start)

        return result

    def get_preserved_context(self, context_id: str) -> Optional[SecureActionContext]:
        return self.history.get(context_id)

    def update_context(
        self,
        context_id: str,
        updates: Dict[str, Any],
        modified_by: str = "unknown"
    ) -> bool:
        """Apply field updates to a preserved context and stamp the audit trail"""
        if unknown := set(updates) - CONTEXT_FIELDS:
            raise ValueError(f"Unknown context fields: {', '.join(sorted(unknown))}")

        if not (context := self.history.get(context_id)):
            return False

        for name, value in updates.items():
            setattr(context, name, value)

        context.audit.modified_by = modified_by
        context.audit.modified_at = time.time()
        context.audit.chain.append("updated")

        logger.debug(f"Context updated: {context_id} by {modified_by}")
        return True

    def release_context(self, context_id: str) -> bool:
        """Mark a preserved context as released by its action"""
        if not (context := self.history.get(context_id)):
            return False
        if "released" not in context.audit.chain:
            context.audit.chain.append("released")
        return True

    def enrich_context(
        self,
        context: ActionContext,
        enrichment_data: Dict[str, Any],
        enrichment_config: Optional[EnrichmentConfig] = None
    ) -> ActionContext:
        """Return a copy of the context with extra custom data merged in"""
        custom = {**(context.custom or {}), **enrichment_data}

        policies = enrichment_config.security_policies if enrichment_config else None
        if policies and policies.sanitize_custom_data:
            custom = sanitize_custom_data(custom)

        return replace(context, custom=custom)

    def extract_metadata(self, context: ActionContext) -> Dict[str, Any]:
        """Compact description of a context for logging"""
        return {
            "query": context.query,
            "timestamp": context.timestamp,
            "source_type": context.source.type,
            "total_results": context.search.total_results,
            "result_index": context.search.result_index,
            "has_user": context.user is not None,
            "has_custom_data": bool(context.custom),
            "custom_data_keys": list(context.custom or {})
        }

    def clear_history(self) -> int:
        count = len(self.history)
        self.history.clear()
        logger.debug(f"Cleared context history: {count} contexts")
        return count

    def get_statistics(self) -> Dict[str, Any]:
        """History size, average context size, oldest and newest entries"""
        now = time.time()
        contexts = list(self.history.values())
        sizes = [calculate_context_size(c) for c in contexts]

        stats: Dict[str, Any] = {
            "total_preserved": len(contexts),
            "current_size": len(self.history),
            "average_size": sum(sizes) / len(sizes) if sizes else 0
        }
        if contexts:
            oldest = min(contexts, key=lambda c: c.audit.created_at)
            newest = max(contexts, key=lambda c: c.audit.created_at)
            stats["oldest_context"] = {"id": oldest.context_id, "age": now - oldest.audit.created_at}
            stats["newest_context"] = {"id": newest.context_id, "age": now - newest.audit.created_at}
        return stats

    async def _validate(self, context: ActionContext, config: EnrichmentConfig) -> ValidationOutcome:
        errors: List[str] = []
        warnings: List[str] = []

        if not isinstance(context.query, str):
            errors.append("Query is required and must be a string")
        elif not context.query:
            warnings.append("Query is empty")

        if isinstance(context.timestamp, bool) or not isinstance(context.timestamp, (int, float)):
            errors.append("Timestamp is required and must be a number")

        if not context.source or not getattr(context.source, "type", None):
            errors.append("Source type is required")

        total = getattr(context.search, "total_results", None)
        if isinstance(total, bool) or not isinstance(total, (int, float)):
            errors.append("Search metadata with total_results is required")

        for rule in config.validation_rules:
            name = getattr(rule, '__name__', repr(rule))
            try:
                outcome = await resolve(rule(context))
                if isinstance(outcome, dict):
                    outcome = ValidationOutcome(
                        valid=bool(outcome.get("valid", False)),
                        errors=list(outcome.get("errors") or []),
                        warnings=list(outcome.get("warnings") or [])
                    )
                elif not isinstance(outcome, ValidationOutcome):
                    raise TypeError(f"returned {type(outcome).__name__}, expected ValidationOutcome or dict")
            except Exception as e:
                logger.warning(f"Validation rule {name} failed: {e}")
                warnings.append(f"Validation rule failed: {e}")
                continue
            if not outcome.valid:
                errors.extend(outcome.errors)
            warnings.extend(outcome.warnings)

        return ValidationOutcome(valid=not errors, errors=errors, warnings=warnings)

    def _sanitize(self, context: ActionContext, policies: Optional[SecurityPolicies]) -> ActionContext:
        query = sanitize_string(context.query)
        custom = sanitize_custom_data(context.custom) if context.custom else context.custom

        if policies and policies.redact_sensitive_data:
            query = self.scrubber.redact(query)
            if custom:
                custom = self.scrubber.redact_mapping(custom)

        sanitized = replace(context, query=query, custom=custom)

        if policies and policies.restricted_fields:
            # Nested records are shared with the caller unless deep-cloned
            sanitized = copy.deepcopy(sanitized)
            for path in policies.restricted_fields:
                self._remove_field(sanitized, path)

        return sanitized

    @staticmethod
    def _remove_field(context: ActionContext, path: str) -> None:
        """Remove a dotted field path such as ``custom.token`` or ``user.session_id``"""
        *parents, leaf = path.split('.')
        current: Any = context
        for part in parents:
            current = current.get(part) if isinstance(current, dict) else getattr(current, part, None)
            if current is None:
                return

        if isinstance(current, dict):
            current.pop(leaf, None)
        elif hasattr(current, leaf):
            setattr(current, leaf, None)

    def _secure(
        self,
        context: ActionContext,
        validation: ValidationOutcome,
        sanitized: bool,
        policies: Optional[SecurityPolicies]
    ) -> SecureActionContext:
        trusted = self._is_trusted(context, policies)

        restrictions = []
        if context.user is None:
            restrictions.append("no-user-context")
        if not trusted:
            restrictions.append("untrusted-origin")

        permissions = list(context.user.permissions) if context.user else []
        if policies:
            permissions += policies.required_permissions

        chain = ["created", "sanitized"] if sanitized else ["created"]

        return SecureActionContext(
            **{name: getattr(context, name) for name in CONTEXT_FIELDS},
            validation=ValidationRecord(
                is_valid=validation.valid,
                sanitized=sanitized,
                errors=list(validation.errors),
                warnings=list(validation.warnings)
            ),
            security=SecurityRecord(
                trusted=trusted,
                origin=self._origin(context),
                permissions=list(dict.fromkeys(permissions)),
                restrictions=restrictions
            ),
            audit=AuditRecord(
                context_id=generate_id("ctx"),
                created_by="ContextPreserver",
                created_at=time.time(),
                chain=chain
            )
        )

    def _is_trusted(self, context: ActionContext, policies: Optional[SecurityPolicies]) -> bool:
        if not policies or policies.allowed_origins is None:
            return True
        return self._origin(context) in policies.allowed_origins

    @staticmethod
    def _origin(context: ActionContext) -> str:
        return context.source.name or context.source.type or "unknown"

    def _add_to_history(self, context: SecureActionContext) -> None:
        self.history[context.context_id] = context
        while len(self.history) > self.max_history_size:
            oldest = next(iter(self.history))
            del self.history[oldest]
