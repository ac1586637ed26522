"""Success evaluator: judges a step outcome against its criteria."""

from __future__ import annotations

import logging
from typing import Optional

from vmregress.models.scenario import SuccessCriteria

logger = logging.getLogger(__name__)


def evaluate(
    criteria: Optional[SuccessCriteria],
    exit_code: Optional[int],
    output: Optional[str],
) -> bool:
    """Return True when every configured rule holds.

    Rules are AND-combined: expected exit code, text the output must contain
    (missing output fails), and text the output must not contain.
    """
    if criteria is None:
        return True

    if criteria.expected_exit_code is not None and exit_code != criteria.expected_exit_code:
        logger.debug("Exit code %s != expected %s", exit_code, criteria.expected_exit_code)
        return False

    if criteria.contains_text:
        if not output or criteria.contains_text not in output:
            logger.debug("Output does not contain %r", criteria.contains_text)
            return False

    if criteria.not_contains_text:
        if output and criteria.not_contains_text in output:
            logger.debug("Output contains forbidden %r", criteria.not_contains_text)
            return False

    return True
