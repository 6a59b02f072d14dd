"""
Patch Generator

Applies a conflict-free remediation plan to the original source in a single
ascending pass over the ORIGINAL offsets. Fails closed per edit: an edit
whose captured `before` text no longer matches the source at its span is
skipped and reported as ModelDriftError; every other edit still applies.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from anchorlens.models import EngineError, RemediationPlanItem
from anchorlens.utils.errors import ModelDriftError

logger = logging.getLogger("anchorlens.patcher")


@dataclass
class PatchResult:
    code: str
    applied: List[RemediationPlanItem] = field(default_factory=list)
    errors: List[EngineError] = field(default_factory=list)


def apply_plan(source: str, plan: List[RemediationPlanItem]) -> PatchResult:
    out: List[str] = []
    cursor = 0
    result = PatchResult(code=source)

    for item in sorted(plan, key=lambda i: (i.edit.span.start, i.edit.span.end, i.priority)):
        span = item.edit.span
        location = {"start": span.start, "end": span.end, "finding_refs": item.finding_refs}
        if span.start < cursor or span.end > len(source):
            err = ModelDriftError(f"Edit {span.start}-{span.end} falls outside the unpatched source", location=location)
        elif source[span.start:span.end] != item.edit.before:
            err = ModelDriftError(
                f"Source at {span.start}-{span.end} no longer matches the captured text",
                location=location,
            )
        else:
            out.append(source[cursor:span.start])
            out.append(item.edit.after)
            cursor = span.end
            result.applied.append(item)
            continue
        logger.warning(err.message)
        result.errors.append(err.to_detail())

    out.append(source[cursor:])
    result.code = "".join(out)
    logger.info(f"Applied {len(result.applied)}/{len(plan)} edits")
    return result
