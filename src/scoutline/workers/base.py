"""
Shared plumbing for stage handlers.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional

from scoutline.exceptions import CollaboratorError
from scoutline.observability import increment
from scoutline.protocols import CollaboratorResult


async def call_collaborator(
    call: Awaitable[CollaboratorResult],
    *,
    timeout: float,
    stage: str,
    analysis_id: Optional[str] = None,
    domain: Optional[str] = None,
) -> CollaboratorResult:
    """
    Await a collaborator under a hard timeout.

    Timeouts, raised exceptions, error results and empty results all become
    ``CollaboratorError`` so the owning queue retries the job.
    """
    try:
        result = await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError as e:
        increment("collaborator_errors", labels={"stage": stage})
        raise CollaboratorError(
            f"{stage} collaborator timed out after {timeout:g}s",
            analysis_id=analysis_id,
            stage=stage,
            domain=domain,
        ) from e
    except CollaboratorError:
        increment("collaborator_errors", labels={"stage": stage})
        raise
    except Exception as e:
        increment("collaborator_errors", labels={"stage": stage})
        raise CollaboratorError(
            f"{stage} collaborator raised {type(e).__name__}: {e}",
            analysis_id=analysis_id,
            stage=stage,
            domain=domain,
        ) from e

    if not result.ok:
        increment("collaborator_errors", labels={"stage": stage})
        raise CollaboratorError(
            result.error or f"{stage} collaborator returned an empty result",
            analysis_id=analysis_id,
            stage=stage,
            domain=domain,
        )
    return result
