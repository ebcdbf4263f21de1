"""
Strategy runner — try an ordered list of strategies until one works.

Failures inside the chain stay local: they are logged and the next
strategy is attempted. Only when every strategy has been tried does the
operation raise, naming all attempts and the last error.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence

from onerecovery.core.errors import BuildError, CommandError
from onerecovery.core.models.strategy import StrategyResult
from onerecovery.core.strategies.base import Request, Strategy

logger = logging.getLogger(__name__)


def try_strategies(
    strategies: Sequence[Strategy],
    request: Request,
    *,
    error_cls: type[BuildError] = BuildError,
    what: str = "operation",
    remediation: str = "",
) -> StrategyResult:
    """Run ``strategies`` in order and return the first success.

    Raises:
        error_cls: when every strategy failed or was unavailable.
    """
    if not strategies:
        raise error_cls(f"{what}: no strategies configured", remediation=remediation)

    attempts: list[StrategyResult] = []
    previous: StrategyResult | None = None

    for strategy in strategies:
        if strategy.only_after_permission_error and not (
            previous is not None and previous.permission_denied
        ):
            logger.debug("⊘ %s: %s → not a permission failure, skipped", what, strategy.name)
            continue

        if not strategy.is_available(request):
            logger.debug("⊘ %s: %s → unavailable", what, strategy.name)
            attempts.append(StrategyResult.skip(strategy.name, "unavailable"))
            continue

        start = time.monotonic()
        try:
            result = strategy.execute(request)
        except Exception as e:  # strategies must not raise; keep the chain alive
            logger.exception("Strategy %s raised", strategy.name)
            result = StrategyResult.failure(strategy.name, f"{type(e).__name__}: {e}")
        result = result.model_copy(
            update={"duration_ms": int((time.monotonic() - start) * 1000)}
        )
        attempts.append(result)

        if result.ok or result.status == "skipped":
            marker = "✓" if result.ok else "⊘"
            logger.info("%s %s: %s → %s", marker, what, strategy.name, result.status)
            return result.model_copy(
                update={"metadata": {**result.metadata, "attempts": _summarise(attempts)}}
            )

        logger.warning("✗ %s: %s → %s", what, strategy.name, result.error)
        if result.terminal:
            raise CommandError(
                f"{what} failed in {strategy.name}: {result.error}",
                returncode=int(result.metadata.get("returncode", 1)),
                output=str(result.metadata.get("output", "")),
                remediation=remediation,
            )
        previous = result

    tried = [a.strategy for a in attempts]
    last_error = next(
        (a.error for a in reversed(attempts) if a.error),
        "no strategy was available",
    )
    raise error_cls(
        f"{what} failed; tried {', '.join(tried) or 'nothing'}; last error: {last_error}",
        remediation=remediation,
    )


def _summarise(attempts: list[StrategyResult]) -> list[dict[str, str]]:
    return [
        {"strategy": a.strategy, "status": a.status, "error": a.error or ""}
        for a in attempts
    ]
