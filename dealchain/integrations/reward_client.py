import httpx
from dealchain.core.config import settings


class RewardApiError(Exception):
    pass


class RewardLedgerClient:
    """Pushes coupon events to the reward / reputation ledger."""

    def __init__(self, base_url: str | None = None, token: str | None = None, transport=None):
        self.base_url = (base_url or settings.REWARD_API_BASE_URL or "").rstrip("/")
        self.token = token if token is not None else settings.REWARD_API_TOKEN
        self.timeout = 10
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def publish(self, event: dict) -> None:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(f"{self.base_url}/events", json=event, headers=headers)
        except httpx.HTTPError as e:
            raise RewardApiError(f"Reward API unreachable: {e!r}") from e

        if r.status_code >= 300:
            raise RewardApiError(f"Reward API error: {r.status_code} {r.text}")
