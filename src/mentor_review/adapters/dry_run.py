from __future__ import annotations

from mentor_review.adapters.base import DraftRequest, DraftResult

DRY_RUN_NOTE = 'dry-run drafter: no model was called, edit this verdict before finalizing'


class DryRunDrafter:
    """Returns an unresolved Review verdict so a mentor has to decide."""

    name = 'dry-run'

    def draft(self, request: DraftRequest) -> DraftResult:  # noqa: ARG002
        payload = {
            'result': 'Review',
            'good_points': [],
            'improvements': [],
            'fail_reasons': [],
            'submission_issue': None,
            'confidence_note': DRY_RUN_NOTE,
        }
        return DraftResult(ok=True, payload=payload, model=self.name)
