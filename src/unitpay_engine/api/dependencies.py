"""FastAPI dependencies for dependency injection."""

from typing import Annotated

from fastapi import Depends, Request

from unitpay_engine.engine import SettlementEngine


def get_settlement_engine(request: Request) -> SettlementEngine:
    """The engine built by the application lifespan."""
    return request.app.state.engine


# Type aliases for cleaner dependency injection
Engine = Annotated[SettlementEngine, Depends(get_settlement_engine)]
