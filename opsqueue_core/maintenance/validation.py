"""OpsQueue Validation - Rule-Based Data Validation and Auto-Fix.

A validation job runs every applicable rule in registration order,
classifies the issues each one reports by the rule's severity, applies
fixers when asked to (never in dry-run), and returns a report. A rule
or fixer that raises is logged and skipped; it never aborts the run.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from opsqueue_core.maintenance.entities import EntityStore
from opsqueue_core.worker.worker import JobContext

logger = logging.getLogger(__name__)

ALL = "all"
SCOPES = (ALL, "cards", "decks", "collections", "users", "prices")

# Entity set counted as "checked" for each scope
SCOPE_ENTITY_SETS = {
    "cards": "cards",
    "decks": "decks",
    "collections": "collections",
    "users": "users",
    "prices": "prices",
}


class RuleSeverity(Enum):
    """How a rule's issues are reported."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class ValidationIssue:
    """One problem found by a rule."""

    entity_type: str
    entity_id: str
    message: str
    field: Optional[str] = None
    current_value: Any = None
    expected_value: Any = None


@dataclass(frozen=True)
class ValidationFix:
    """One change applied by a fixer."""

    entity_type: str
    entity_id: str
    field: str
    old_value: Any = None
    new_value: Any = None


@dataclass
class ValidationContext:
    """Handed to rules and fixers."""

    scope: str
    dry_run: bool
    entities: EntityStore
    log: Callable[[str], None] = lambda line: None
    now: datetime = field(default_factory=datetime.now)


Validate = Callable[[ValidationContext], Iterable[ValidationIssue]]
AutoFix = Callable[[ValidationContext, List[ValidationIssue]], List[ValidationFix]]


@dataclass(frozen=True)
class ValidationRule:
    """A named check, optionally paired with a fixer.

    Attributes:
        name: Unique key
        description: Human readable purpose
        severity: error issues are errors, anything else is a warning
        scope: Domains the rule applies to, or {"all"}
        validate: Returns the issues found (may be lazy)
        auto_fix: Repairs issues and returns the fixes applied
    """

    name: str
    description: str
    severity: RuleSeverity
    scope: FrozenSet[str]
    validate: Validate
    auto_fix: Optional[AutoFix] = None

    def __post_init__(self):
        unknown = set(self.scope) - set(SCOPES)
        if unknown:
            raise ValueError(f"Rule {self.name} has unknown scope(s): {sorted(unknown)}")
        object.__setattr__(self, "scope", frozenset(self.scope))

    def applies_to(self, scope: str) -> bool:
        return scope == ALL or scope in self.scope or ALL in self.scope


class RuleRegistry:
    """Immutable, ordered name -> rule table."""

    def __init__(self, rules: Iterable[ValidationRule]):
        self._rules: Tuple[ValidationRule, ...] = tuple(rules)
        self._by_name: Dict[str, ValidationRule] = {}
        for rule in self._rules:
            if rule.name in self._by_name:
                raise ValueError(f"Duplicate validation rule: {rule.name}")
            self._by_name[rule.name] = rule

    def __iter__(self):
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def get(self, name: str) -> Optional[ValidationRule]:
        return self._by_name.get(name)

    def names(self) -> List[str]:
        return [rule.name for rule in self._rules]


@dataclass(frozen=True)
class ValidationJobInput:
    """Decoded payload of a data-validation job."""

    scope: str = ALL
    rules: Optional[Tuple[str, ...]] = None
    auto_fix: bool = False
    dry_run: bool = False

    def __post_init__(self):
        if self.scope not in SCOPES:
            raise ValueError(f"scope must be one of {SCOPES}, got {self.scope!r}")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ValidationJobInput":
        rules = payload.get("rules")
        if rules is not None:
            if isinstance(rules, str) or not all(isinstance(r, str) for r in rules):
                raise ValueError("rules must be a list of rule names")
            rules = tuple(rules)
        for key in ("autoFix", "dryRun"):
            if not isinstance(payload.get(key, False), bool):
                raise ValueError(f"{key} must be a boolean")
        return cls(
            scope=payload.get("scope") or ALL,
            rules=rules,
            auto_fix=payload.get("autoFix", False),
            dry_run=payload.get("dryRun", False),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "scope": self.scope,
            "autoFix": self.auto_fix,
            "dryRun": self.dry_run,
        }
        if self.rules is not None:
            payload["rules"] = list(self.rules)
        return payload


@dataclass
class RuleSummary:
    """Per-rule line of the report."""

    checked: int = 0
    errors: int = 0
    warnings: int = 0
    fixed: int = 0
    failed: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "checked": self.checked,
            "errors": self.errors,
            "warnings": self.warnings,
            "fixed": self.fixed,
        }
        if self.failed is not None:
            data["failed"] = self.failed
        return data


@dataclass(frozen=True)
class ValidationReport:
    """Aggregate of one validation run."""

    timestamp: datetime
    duration_ms: int
    entities_checked: int
    error_count: int
    warning_count: int
    fixed_count: int
    by_rule: Dict[str, RuleSummary]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "duration": self.duration_ms,
            "summary": {
                "entitiesChecked": self.entities_checked,
                "errorCount": self.error_count,
                "warningCount": self.warning_count,
                "fixedCount": self.fixed_count,
            },
            "byRule": {name: s.to_dict() for name, s in self.by_rule.items()},
        }


@dataclass
class ValidationResult:
    """Output of a data-validation job."""

    rules_executed: int
    issues_fixed: int
    errors: List[Dict[str, Any]]
    warnings: List[Dict[str, Any]]
    report: ValidationReport

    @property
    def issues_found(self) -> int:
        return len(self.errors) + len(self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rulesExecuted": self.rules_executed,
            "issuesFound": self.issues_found,
            "issuesFixed": self.issues_fixed,
            "errors": self.errors,
            "warnings": self.warnings,
            "report": self.report.to_dict(),
        }


def _percent(done: int, total: int) -> int:
    # Half-up rounding
    return int(done * 100 / total + 0.5) if total else 100


class ValidationEngine:
    """Runs validation rules against an entity store."""

    def __init__(
        self,
        registry: RuleRegistry,
        entities: EntityStore,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.registry = registry
        self.entities = entities
        self.clock = clock

    def select_rules(self, job_input: ValidationJobInput) -> List[ValidationRule]:
        """Registered rules matching the requested names and scope, in order."""
        selected = []
        for rule in self.registry:
            if job_input.rules is not None and rule.name not in job_input.rules:
                continue
            if not rule.applies_to(job_input.scope):
                continue
            selected.append(rule)

        if job_input.rules is not None:
            unknown = [name for name in job_input.rules if name not in self.registry]
            if unknown:
                logger.warning(f"Ignoring unknown validation rules: {unknown}")
        return selected

    def count_entities(self, scope: str) -> int:
        if scope == ALL:
            return sum(self.entities.count(s) for s in SCOPE_ENTITY_SETS.values())
        entity_set = SCOPE_ENTITY_SETS.get(scope)
        return self.entities.count(entity_set) if entity_set else 0

    def run(
        self,
        job_input: ValidationJobInput,
        progress: Optional[Callable[[int], None]] = None,
        log: Optional[Callable[[str], None]] = None,
    ) -> ValidationResult:
        """Execute one validation pass.

        Args:
            job_input: Scope, rule selection and fix flags
            progress: Receives 0-100 after each rule
            log: Receives human readable progress lines

        Returns:
            Errors, warnings and the aggregate report
        """
        log = log or (lambda line: None)
        started = time.monotonic()
        context = ValidationContext(
            scope=job_input.scope,
            dry_run=job_input.dry_run,
            entities=self.entities,
            log=log,
            now=self.clock(),
        )
        rules = self.select_rules(job_input)
        errors: List[Dict[str, Any]] = []
        warnings: List[Dict[str, Any]] = []
        by_rule: Dict[str, RuleSummary] = {}
        issues_fixed = 0

        for index, rule in enumerate(rules, start=1):
            summary = by_rule.setdefault(rule.name, RuleSummary())
            log(f"Running rule: {rule.name}")

            try:
                issues = list(rule.validate(context))
            except Exception as e:
                logger.error(f"Validation rule {rule.name} failed: {e}")
                log(f"Rule {rule.name} failed: {e}")
                summary.failed = str(e) or type(e).__name__
                issues = []

            summary.checked = len(issues)
            for issue in issues:
                entry = {
                    "rule": rule.name,
                    "entityType": issue.entity_type,
                    "entityId": issue.entity_id,
                    "field": issue.field,
                    "message": issue.message,
                }
                if rule.severity == RuleSeverity.ERROR:
                    entry.update(severity="error", fixAvailable=rule.auto_fix is not None)
                    errors.append(entry)
                    summary.errors += 1
                else:
                    entry["suggestion"] = "Auto-fix available" if rule.auto_fix else None
                    warnings.append(entry)
                    summary.warnings += 1

            if job_input.auto_fix and rule.auto_fix and issues and not job_input.dry_run:
                try:
                    fixes = rule.auto_fix(context, issues)
                except Exception as e:
                    logger.error(f"Auto-fix for rule {rule.name} failed: {e}")
                    log(f"Auto-fix for {rule.name} failed: {e}")
                else:
                    summary.fixed = len(fixes)
                    issues_fixed += len(fixes)
                    log(f"Fixed {len(fixes)} issues for rule: {rule.name}")

            if progress:
                progress(_percent(index, len(rules)))

        report = ValidationReport(
            timestamp=self.clock(),
            duration_ms=int((time.monotonic() - started) * 1000),
            entities_checked=self.count_entities(job_input.scope),
            error_count=len(errors),
            warning_count=len(warnings),
            fixed_count=issues_fixed,
            by_rule=by_rule,
        )
        return ValidationResult(
            rules_executed=len(rules),
            issues_fixed=issues_fixed,
            errors=errors,
            warnings=warnings,
            report=report,
        )

    def process(self, context: JobContext) -> Dict[str, Any]:
        """Processor for the data-validation queue."""
        job_input = ValidationJobInput.from_payload(context.payload)
        context.log(
            f"Starting data validation: scope={job_input.scope}, dryRun={job_input.dry_run}"
        )
        result = self.run(job_input, progress=context.update_progress, log=context.log)
        context.log(
            f"Validation completed: {result.issues_found} issues found, "
            f"{result.issues_fixed} fixed"
        )
        logger.info(
            f"Validation job {context.job.id}: {result.rules_executed} rules, "
            f"{len(result.errors)} errors, {len(result.warnings)} warnings, "
            f"{result.issues_fixed} fixed"
        )
        return result.to_dict()


__all__ = [
    "ALL",
    "SCOPES",
    "RuleSeverity",
    "ValidationIssue",
    "ValidationFix",
    "ValidationContext",
    "ValidationRule",
    "RuleRegistry",
    "ValidationJobInput",
    "RuleSummary",
    "ValidationReport",
    "ValidationResult",
    "ValidationEngine",
]
