"""
Per-item transformer interface
"""

from ..models import CandidateItem, TransformOutcome


class ItemTransformer:
    """Processes one candidate and returns a TransformOutcome"""

    name = "transformer"

    async def transform(self, item: CandidateItem) -> TransformOutcome:
        raise NotImplementedError
