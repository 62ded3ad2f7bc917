from __future__ import annotations


class MarketError(Exception):
    """Base for every business-rule rejection raised by the engines."""

    status_code = 400
    code = "market_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code.replace("_", " ").capitalize())

    @property
    def message(self) -> str:
        return str(self)


class NotFound(MarketError):
    status_code = 404
    code = "not_found"


class NotOwner(MarketError):
    status_code = 403
    code = "not_owner"


class InvalidState(MarketError):
    status_code = 409
    code = "invalid_state"


class InvalidTransition(InvalidState):
    code = "invalid_transition"


class PromotionExpired(MarketError):
    status_code = 410
    code = "promotion_expired"


class PromotionInactive(InvalidState):
    code = "promotion_inactive"


class SupplyExhausted(MarketError):
    status_code = 409
    code = "supply_exhausted"


class TokenNotFound(NotFound):
    code = "token_not_found"


class TokenExpired(MarketError):
    status_code = 410
    code = "token_expired"


class TokenAlreadyConsumed(MarketError):
    status_code = 409
    code = "token_already_consumed"


class ListingNotActive(InvalidState):
    code = "listing_not_active"


class SelfPurchase(MarketError):
    code = "self_purchase"


class InvalidPrice(MarketError):
    code = "invalid_price"


class InvalidAmount(MarketError):
    code = "invalid_amount"


class AuctionEnded(MarketError):
    status_code = 410
    code = "auction_ended"


class AuctionNotEnded(InvalidState):
    code = "auction_not_ended"


class BidTooLow(MarketError):
    status_code = 409
    code = "bid_too_low"


class SelfBid(MarketError):
    code = "self_bid"


class StillLocked(MarketError):
    status_code = 409
    code = "still_locked"


class AlreadyExpired(MarketError):
    status_code = 410
    code = "already_expired"


class SettlementUnavailable(MarketError):
    status_code = 503
    code = "settlement_unavailable"


class SettlementDeclined(MarketError):
    status_code = 402
    code = "settlement_declined"
