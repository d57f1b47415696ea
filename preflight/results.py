"""Per-check results and their JSON document form."""

import json
from dataclasses import dataclass, field
from typing import Optional, Tuple

from preflight.check import Check


@dataclass(frozen=True)
class Result:
    """The outcome of running one check."""

    check: Check
    elapsed_time: float
    # Only set for entries in Results.errors
    error: Optional[str] = None

    @property
    def name(self):
        return self.check.name


@dataclass(frozen=True)
class Results:
    """Immutable snapshot of a run: what was tested and where every check landed."""

    tested_image: str
    passed_overall: bool = False
    passed: Tuple[Result, ...] = field(default_factory=tuple)
    failed: Tuple[Result, ...] = field(default_factory=tuple)
    errors: Tuple[Result, ...] = field(default_factory=tuple)

    def names(self):
        """Return every check name across all buckets, in bucket order."""
        return [r.name for r in self.passed + self.failed + self.errors]

    def to_dict(self):
        """Return the JSON-able document the sandboxed worker writes to stdout."""
        passed = []
        for result in self.passed:
            meta = result.check.metadata()
            passed.append({"name": result.name,
                           "elapsed_time": result.elapsed_time,
                           "description": meta.description,
                           "level": meta.level})
        failed = []
        for result in self.failed:
            meta = result.check.metadata()
            help_text = result.check.help()
            failed.append({"name": result.name,
                           "elapsed_time": result.elapsed_time,
                           "description": meta.description,
                           "level": meta.level,
                           "help": help_text.message,
                           "suggestion": help_text.suggestion})
        errors = []
        for result in self.errors:
            help_text = result.check.help()
            errors.append({"name": result.name,
                           "elapsed_time": result.elapsed_time,
                           "help": help_text.message,
                           "suggestion": help_text.suggestion,
                           "error": result.error or ""})
        return {
            "image": self.tested_image,
            "passed": self.passed_overall,
            "results": {"passed": passed, "failed": failed, "errors": errors},
        }

    def to_json(self):
        return json.dumps(self.to_dict(), indent=4)
