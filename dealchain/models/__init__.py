# dealchain/models/__init__.py
# Import all models here so SQLAlchemy registers them into Base.metadata.

from dealchain.models.promotion import Promotion  # noqa: F401

from dealchain.models.coupon import Coupon, CouponState, CouponTransfer  # noqa: F401
from dealchain.models.coupon_event import CouponEvent  # noqa: F401

from dealchain.models.redemption_token import RedemptionToken  # noqa: F401
from dealchain.models.listing import Listing  # noqa: F401
from dealchain.models.auction import Auction, AuctionBid, AuctionStatus  # noqa: F401
from dealchain.models.stake import StakePosition, StakeStatus  # noqa: F401
from dealchain.models.group_deal import GroupDeal, GroupDealParticipant  # noqa: F401
