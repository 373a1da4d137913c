from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal

from handoff.config import affiliate_share_bps, platform_fee_bps, transfer_fee_bps, transfer_fee_minimum_minor

BPS_DENOMINATOR = Decimal("10000")


def _bps_minor_half_up(amount_minor: int, bps: int) -> int:
    amt = Decimal(max(0, int(amount_minor)))
    rate = Decimal(max(0, int(bps)))
    raw = (amt * rate) / BPS_DENOMINATOR
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class OrderSplit:
    subtotal: int
    platform_fee: int
    affiliate_commission: int
    total: int
    seller_net: int
    platform_net: int
    fee_bps: int
    affiliate_share_bps: int

    def to_dict(self) -> dict:
        return asdict(self)


def compute_split(
    subtotal_minor: int,
    *,
    has_affiliate: bool,
    fee_bps: int | None = None,
    share_bps: int | None = None,
) -> OrderSplit:
    """Split an order subtotal between seller, affiliate and platform.

    Rounding is half-up to one minor unit and applied once per field. The
    affiliate commission is a share of the platform fee, never of the subtotal.
    """
    subtotal = int(subtotal_minor)
    if subtotal < 0:
        raise ValueError("subtotal must be non-negative")
    rate = platform_fee_bps() if fee_bps is None else int(fee_bps)
    share = affiliate_share_bps() if share_bps is None else int(share_bps)
    if not 0 <= rate <= 10000 or not 0 <= share <= 10000:
        raise ValueError("basis points must be within 0..10000")

    fee = _bps_minor_half_up(subtotal, rate)
    commission = _bps_minor_half_up(fee, share) if has_affiliate else 0
    commission = min(commission, fee)
    return OrderSplit(
        subtotal=subtotal,
        platform_fee=fee,
        affiliate_commission=commission,
        total=subtotal + fee,
        seller_net=subtotal,
        platform_net=fee - commission,
        fee_bps=rate,
        affiliate_share_bps=share if has_affiliate else 0,
    )


def transfer_fee(amount_minor: int, *, bps: int | None = None, minimum: int | None = None) -> int:
    rate = transfer_fee_bps() if bps is None else int(bps)
    floor = transfer_fee_minimum_minor() if minimum is None else int(minimum)
    fee = _bps_minor_half_up(amount_minor, rate)
    if rate > 0 and fee < floor:
        fee = floor
    return fee
