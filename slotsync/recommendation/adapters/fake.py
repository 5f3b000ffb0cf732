from slotsync.recommendation.ports import ScoringContext, ScoringResponse


class FakeScoringClient:
    """In-memory test double for the ScoringClientProtocol protocol.

    Set ``response`` to control what ``score`` returns and ``error`` to make
    it raise. Every context it was asked to score is kept in ``contexts``.
    """

    def __init__(self) -> None:
        self.response = ScoringResponse()
        self.error: Exception | None = None
        self.contexts: list[ScoringContext] = []
        self.closed: bool = False

    async def score(self, context: ScoringContext) -> ScoringResponse:
        self.contexts.append(context)
        if self.error:
            raise self.error
        return self.response

    async def close(self) -> None:
        self.closed = True
