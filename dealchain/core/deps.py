from __future__ import annotations

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from dealchain.core.config import settings
from dealchain.core.security import TokenError, wallet_from_token
from dealchain.integrations.reward_client import RewardLedgerClient
from dealchain.integrations.settlement_client import SettlementGateway, build_settlement_gateway
from dealchain.services.errors import MarketError

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)

_settlement_gateway: SettlementGateway | None = None


async def get_current_user_id(token: str | None = Depends(oauth2_scheme)) -> str:
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    try:
        return wallet_from_token(token)
    except TokenError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))


def require_service(x_api_key: str | None = Header(default=None, alias="X-API-Key")) -> None:
    if not x_api_key or x_api_key != settings.SERVICE_API_KEY:
        raise HTTPException(status_code=403, detail="Service key required")


def get_settlement_gateway() -> SettlementGateway:
    global _settlement_gateway
    if _settlement_gateway is None:
        _settlement_gateway = build_settlement_gateway()
    return _settlement_gateway


def get_reward_client() -> RewardLedgerClient:
    return RewardLedgerClient()


def http_error(e: MarketError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail={"code": e.code, "message": e.message})
