from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .remote import AnalysisService

logger = logging.getLogger(__name__)


class ResultStore:
    """Serve completed analysis results by match id."""

    def __init__(self, service: "AnalysisService") -> None:
        self.service = service

    async def lookup(self, match_id: str) -> Optional[Dict[str, Any]]:
        response = await self.service.lookup_result_by_match(match_id)
        if not response.found or response.result is None:
            logger.info("result_lookup_miss", extra={"match_id": match_id})
            return None
        logger.info("result_lookup_hit", extra={"match_id": match_id})
        return response.result
