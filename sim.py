"""
Core Buyback & Burn Simulation Module

This module contains the monthly simulation engine for token supply, treasury,
staking and price dynamics. It includes parameter resolution, the fee engine,
the two fee distribution and burn mechanisms, the price impact model and the
simulation engine that records a monthly history with annual P/V ratios.

Two mechanism designs are modelled:
- Legacy match-and-burn: stakers auto-compound part of their rewards through
  market purchases and the primary treasury burns a matching amount.
- Direct buyback-and-burn: a configurable share of fees buys tokens on the
  market and every purchased token is burned.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

DAYS_PER_MONTH = 30
MIN_PRICE = 0.0001
MAX_PRICE = 1000.0
SPLIT_TOLERANCE = 1e-6


class ConfigurationError(ValueError):
    """Raised when a configuration cannot be turned into simulation parameters"""


class MechanismVariant(str, Enum):
    """Fee-and-burn mechanism design"""

    LEGACY = "legacy"  # match-and-burn
    BUYBACK = "buyback"  # direct buyback-and-burn

    @classmethod
    def parse(cls, value: Union[str, "MechanismVariant"]) -> "MechanismVariant":
        """Accept a variant, its value, or the v1/v2 aliases"""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        aliases = {"v1": cls.LEGACY, "v2": cls.BUYBACK}
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            raise ConfigurationError(f"Unknown mechanism variant: {value!r}") from None


class RunStatus(str, Enum):
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class TerminationReason(str, Enum):
    DURATION = "duration"
    DEPLETION = "depletion"
    ERROR = "error"


def _as_finite(name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise ConfigurationError(f"{name} must be finite, got {value!r}")
    return number


def _check_range(name: str, value: Any, low: float, high: float = math.inf) -> float:
    number = _as_finite(name, value)
    if number < low or number > high:
        if high == math.inf:
            raise ConfigurationError(f"{name} must be >= {low}, got {number}")
        raise ConfigurationError(f"{name} must be within [{low}, {high}], got {number}")
    return number


@dataclass
class SimulationConfig:
    """Configuration parameters for a buyback & burn simulation, in input units"""

    # Trading volumes (daily, millions of USD)
    swap_volume_musd: float = 49.4
    perp_volume_musd: float = 11.3
    secondary_volume_musd: float = 365.9

    # Fees
    trading_fee_pct: float = 0.08  # Primary venue fee rate as a percentage (0.08 = 0.08%)
    secondary_fee_bps: float = 1.0  # Total secondary venue fee rate
    secondary_staker_bps: float = 0.1  # Part of the secondary fee paid to stakers
    affiliate_cut_pct: float = 60.0  # Taken from perp fees only

    # Legacy match-and-burn
    legacy_staker_share_pct: float = 80.0  # Remainder goes to the primary treasury
    auto_compound_rate_pct: float = 70.0  # Staker auto-compound adoption

    # Direct buyback-and-burn (must sum to 100)
    buyback_share_pct: float = 50.0
    staker_share_pct: float = 30.0
    treasury_share_pct: float = 20.0

    # Price dynamics
    supply_elasticity: float = 10.0
    buying_pressure_elasticity: float = 1.5
    buying_pressure_decay_pct: float = 15.0

    # Run length and initial state
    simulation_months: int = 36
    initial_price: float = 0.065
    circulating_supply_m: float = 1909.2
    initial_staked_m: float = 629.5
    primary_treasury_m: float = 41.8
    secondary_treasury_m: float = 32.5
    total_supply: float = 2_209_243_570
    max_supply: float = 3_000_000_000

    def __post_init__(self):
        """Validate ranges as soon as the configuration is built"""
        self.validate()

    def validate(self) -> None:
        """
        Check every field for type and range problems

        Raises:
            ConfigurationError: if any value is non-finite or out of range
        """
        for name in ("swap_volume_musd", "perp_volume_musd", "secondary_volume_musd"):
            _check_range(name, getattr(self, name), 0.0)

        for name in (
            "trading_fee_pct",
            "affiliate_cut_pct",
            "legacy_staker_share_pct",
            "auto_compound_rate_pct",
            "buyback_share_pct",
            "staker_share_pct",
            "treasury_share_pct",
            "buying_pressure_decay_pct",
        ):
            _check_range(name, getattr(self, name), 0.0, 100.0)

        fee_bps = _check_range("secondary_fee_bps", self.secondary_fee_bps, 0.0, 10_000.0)
        staker_bps = _check_range("secondary_staker_bps", self.secondary_staker_bps, 0.0, 10_000.0)
        if staker_bps > fee_bps:
            raise ConfigurationError(
                f"secondary_staker_bps ({staker_bps}) cannot exceed secondary_fee_bps ({fee_bps})"
            )

        _check_range("supply_elasticity", self.supply_elasticity, 0.0)
        _check_range("buying_pressure_elasticity", self.buying_pressure_elasticity, 0.0)

        months = _as_finite("simulation_months", self.simulation_months)
        if months != int(months) or months < 1:
            raise ConfigurationError(f"simulation_months must be a positive integer, got {self.simulation_months!r}")

        price = _as_finite("initial_price", self.initial_price)
        if price <= 0 or price < MIN_PRICE or price > MAX_PRICE:
            raise ConfigurationError(
                f"initial_price must be within [{MIN_PRICE}, {MAX_PRICE}], got {price}"
            )

        for name in ("circulating_supply_m", "initial_staked_m", "primary_treasury_m", "secondary_treasury_m"):
            _check_range(name, getattr(self, name), 0.0)

        circulating = self.circulating_supply_m * 1_000_000
        total = _check_range("total_supply", self.total_supply, 0.0)
        maximum = _check_range("max_supply", self.max_supply, 0.0)
        if total > maximum:
            raise ConfigurationError(f"total_supply ({total:,.0f}) exceeds max_supply ({maximum:,.0f})")
        if circulating > total:
            raise ConfigurationError(
                f"circulating supply ({circulating:,.0f}) exceeds total_supply ({total:,.0f})"
            )

    def validate_buyback_split(self) -> None:
        """Fail fast when the buyback/staker/treasury shares do not total 100%"""
        total = self.buyback_share_pct + self.staker_share_pct + self.treasury_share_pct
        if abs(total / 100.0 - 1.0) > SPLIT_TOLERANCE:
            raise ConfigurationError(
                f"Buyback, staker and treasury shares must sum to 100%, got {total:.4f}% "
                f"(buyback={self.buyback_share_pct}, staker={self.staker_share_pct}, "
                f"treasury={self.treasury_share_pct})"
            )

    def get_split_summary(self) -> Dict[str, float]:
        """Get a summary of the buyback-variant fee split percentages"""
        return {
            'buyback_share_pct': self.buyback_share_pct,
            'staker_share_pct': self.staker_share_pct,
            'treasury_share_pct': self.treasury_share_pct,
            'total_pct': self.buyback_share_pct + self.staker_share_pct + self.treasury_share_pct,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SimulationConfig":
        """
        Build a configuration from a mapping of field values

        Args:
            data: Field name to value; missing fields keep their defaults

        Returns:
            Validated SimulationConfig
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        values = dict(data)
        if 'simulation_months' in values:
            months = _as_finite('simulation_months', values['simulation_months'])
            if months != int(months):
                raise ConfigurationError(f"simulation_months must be an integer, got {values['simulation_months']!r}")
            values['simulation_months'] = int(months)
        return cls(**values)


def rebalance_shares(shares: Mapping[str, int], changed: str, value: int) -> Dict[str, int]:
    """
    Set one percentage share and rescale the others so the total stays 100

    The other shares keep their relative proportions. If they are all zero the
    remainder is split equally. Rounding residue goes to the largest other share.

    Args:
        shares: Current integer percentages keyed by name
        changed: Name of the share being set
        value: New value for that share

    Returns:
        New shares in the same key order
    """
    if changed not in shares:
        raise ConfigurationError(f"Unknown share: {changed!r}")
    others = [key for key in shares if key != changed]
    value = int(min(max(value, 0), 100))
    result = {changed: value}
    if not others:
        return result

    remaining = 100 - value
    other_total = sum(shares[key] for key in others)
    if other_total > 0:
        for key in others:
            result[key] = max(0, int(round(remaining * shares[key] / other_total)))
    else:
        equal_share = remaining // len(others)
        for key in others:
            result[key] = equal_share

    residue = 100 - sum(result.values())
    if residue:
        target = max(others, key=lambda key: result[key])
        result[target] += residue
    return {key: result[key] for key in shares}


@dataclass(frozen=True)
class SimulationParameters:
    """Normalized parameters for one run: monthly USD volumes, fractions, token amounts"""

    variant: MechanismVariant
    monthly_swap_volume: float
    monthly_perp_volume: float
    monthly_secondary_volume: float
    fee_rate: float
    secondary_fee_rate: float
    secondary_staker_rate: float
    affiliate_share: float
    buyback_share: float
    staker_share: float
    treasury_share: float
    auto_compound_rate: float
    supply_elasticity: float
    buying_pressure_elasticity: float
    decay_rate: float
    simulation_months: int
    initial_price: float
    initial_circulating_supply: float
    initial_total_supply: float
    max_supply: float
    initial_staked: float
    initial_primary_treasury: float
    initial_secondary_treasury: float

    @property
    def market_depth(self) -> float:
        """Daily volume used as a proxy for order book depth"""
        return (self.monthly_swap_volume + self.monthly_secondary_volume) / DAYS_PER_MONTH


def resolve_parameters(config: SimulationConfig,
                       variant: Union[str, MechanismVariant] = MechanismVariant.BUYBACK) -> SimulationParameters:
    """
    Convert a raw configuration into the parameter set for one run

    Daily volumes in millions become monthly USD totals, percentages and basis
    points become fractions, and only the active variant's split is kept.

    Args:
        config: Raw configuration in input units
        variant: Mechanism design to simulate

    Returns:
        Frozen SimulationParameters

    Raises:
        ConfigurationError: if the configuration is invalid for this variant
    """
    variant = MechanismVariant.parse(variant)
    config.validate()

    volume_scale = 1_000_000 * DAYS_PER_MONTH
    if variant is MechanismVariant.LEGACY:
        staker_share = config.legacy_staker_share_pct / 100
        split = {
            'buyback_share': 0.0,
            'staker_share': staker_share,
            'treasury_share': 1.0 - staker_share,
            'auto_compound_rate': config.auto_compound_rate_pct / 100,
        }
    else:
        config.validate_buyback_split()
        split = {
            'buyback_share': config.buyback_share_pct / 100,
            'staker_share': config.staker_share_pct / 100,
            'treasury_share': config.treasury_share_pct / 100,
            'auto_compound_rate': 0.0,
        }

    params = SimulationParameters(
        variant=variant,
        monthly_swap_volume=config.swap_volume_musd * volume_scale,
        monthly_perp_volume=config.perp_volume_musd * volume_scale,
        monthly_secondary_volume=config.secondary_volume_musd * volume_scale,
        fee_rate=config.trading_fee_pct / 100,
        secondary_fee_rate=config.secondary_fee_bps / 10_000,
        secondary_staker_rate=config.secondary_staker_bps / 10_000,
        affiliate_share=config.affiliate_cut_pct / 100,
        supply_elasticity=float(config.supply_elasticity),
        buying_pressure_elasticity=float(config.buying_pressure_elasticity),
        decay_rate=config.buying_pressure_decay_pct / 100,
        simulation_months=int(config.simulation_months),
        initial_price=float(config.initial_price),
        initial_circulating_supply=config.circulating_supply_m * 1_000_000,
        initial_total_supply=float(config.total_supply),
        max_supply=float(config.max_supply),
        initial_staked=config.initial_staked_m * 1_000_000,
        initial_primary_treasury=config.primary_treasury_m * 1_000_000,
        initial_secondary_treasury=config.secondary_treasury_m * 1_000_000,
        **split,
    )
    # Finite inputs can still overflow once scaled to monthly USD
    overflowed = [
        f.name for f in fields(params)
        if isinstance(getattr(params, f.name), float) and not math.isfinite(getattr(params, f.name))
    ]
    if not math.isfinite(params.market_depth):
        overflowed.append('market_depth')
    if overflowed:
        raise ConfigurationError(f"Converted parameters are not finite: {', '.join(overflowed)}")
    return params


# ---------------------------------------------------------------------------
# Fee engine
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeeBreakdown:
    """Gross fees generated in one month, in USD"""

    swap_fees: float
    perp_fees: float
    secondary_fees: float
    secondary_staker_rewards: float
    secondary_treasury_inflow: float

    @property
    def primary_fees(self) -> float:
        return self.swap_fees + self.perp_fees


def calculate_fees(params: SimulationParameters) -> FeeBreakdown:
    """Gross monthly fees per source; identical for both mechanism designs"""
    secondary_fees = params.monthly_secondary_volume * params.secondary_fee_rate
    secondary_staker_rewards = params.monthly_secondary_volume * params.secondary_staker_rate
    return FeeBreakdown(
        swap_fees=params.monthly_swap_volume * params.fee_rate,
        perp_fees=params.monthly_perp_volume * params.fee_rate,
        secondary_fees=secondary_fees,
        secondary_staker_rewards=secondary_staker_rewards,
        secondary_treasury_inflow=secondary_fees - secondary_staker_rewards,
    )


# ---------------------------------------------------------------------------
# Fee distribution
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Distribution:
    """Fee allocation by recipient for one month, in USD"""

    variant: MechanismVariant
    affiliate_cut: float = 0.0
    staker_rewards: float = 0.0  # primary venue share only
    secondary_staker_rewards: float = 0.0
    primary_treasury_inflow: float = 0.0
    secondary_treasury_inflow: float = 0.0
    buyback: float = 0.0
    error: Optional[str] = None

    @property
    def total_staker_rewards(self) -> float:
        return self.staker_rewards + self.secondary_staker_rewards

    @property
    def treasury_fees_total(self) -> float:
        return self.primary_treasury_inflow + self.secondary_treasury_inflow


def _is_valid_price(price: float) -> bool:
    return isinstance(price, (int, float)) and math.isfinite(price) and price > 0


class DistributionStrategy(ABC):
    """Abstract base class for fee distribution rules"""

    variant: MechanismVariant

    def __init__(self, affiliate_share: float):
        self.affiliate_share = affiliate_share

    @abstractmethod
    def fractions(self) -> Dict[str, float]:
        """Fractions used by this rule, keyed by name"""
        pass

    @abstractmethod
    def split(self, net_fees: float) -> Tuple[float, float, float]:
        """Split net fees into (buyback, staker, treasury) amounts"""
        pass

    @abstractmethod
    def get_description(self) -> str:
        pass

    def distribute(self, fees: FeeBreakdown, price: float) -> Distribution:
        """
        Allocate this month's fees to affiliates, stakers, treasuries and buyback

        Perp fees pay the affiliate cut first; swap fees and net perp fees are
        then split independently and summed.

        Args:
            fees: Gross fees for the month
            price: Current spot price, which must be positive and finite

        Returns:
            Distribution, zeroed with an error message if inputs are degenerate
        """
        if not _is_valid_price(price):
            return Distribution(self.variant, error=f"invalid spot price {price!r} in fee distribution")
        invalid = [name for name, value in self.fractions().items() if not math.isfinite(value)]
        if invalid:
            return Distribution(self.variant, error=f"non-finite fee fractions: {', '.join(invalid)}")

        affiliate_cut = fees.perp_fees * self.affiliate_share
        swap_buyback, swap_stakers, swap_treasury = self.split(fees.swap_fees)
        perp_buyback, perp_stakers, perp_treasury = self.split(fees.perp_fees - affiliate_cut)

        return Distribution(
            variant=self.variant,
            affiliate_cut=affiliate_cut,
            staker_rewards=swap_stakers + perp_stakers,
            secondary_staker_rewards=fees.secondary_staker_rewards,
            primary_treasury_inflow=swap_treasury + perp_treasury,
            secondary_treasury_inflow=fees.secondary_treasury_inflow,
            buyback=swap_buyback + perp_buyback,
        )


class LegacySplit(DistributionStrategy):
    """Fixed staker/treasury split with no buyback allocation"""

    variant = MechanismVariant.LEGACY

    def __init__(self, staker_share: float, affiliate_share: float):
        super().__init__(affiliate_share)
        self.staker_share = staker_share

    def fractions(self) -> Dict[str, float]:
        return {'affiliate_share': self.affiliate_share, 'staker_share': self.staker_share}

    def split(self, net_fees: float) -> Tuple[float, float, float]:
        return 0.0, net_fees * self.staker_share, net_fees * (1 - self.staker_share)

    def get_description(self) -> str:
        return f"Legacy split: {self.staker_share:.0%} stakers / {1 - self.staker_share:.0%} treasury"


class ConfigurableSplit(DistributionStrategy):
    """
    Buyback/staker/treasury split

    The three fractions are expected to sum to 1.0; reconciling them is the
    caller's job and this rule applies them as given.
    """

    variant = MechanismVariant.BUYBACK

    def __init__(self, buyback_share: float, staker_share: float, treasury_share: float,
                 affiliate_share: float):
        super().__init__(affiliate_share)
        self.buyback_share = buyback_share
        self.staker_share = staker_share
        self.treasury_share = treasury_share

    def fractions(self) -> Dict[str, float]:
        return {
            'affiliate_share': self.affiliate_share,
            'buyback_share': self.buyback_share,
            'staker_share': self.staker_share,
            'treasury_share': self.treasury_share,
        }

    def split(self, net_fees: float) -> Tuple[float, float, float]:
        return (
            net_fees * self.buyback_share,
            net_fees * self.staker_share,
            net_fees * self.treasury_share,
        )

    def get_description(self) -> str:
        return (f"Configurable split: {self.buyback_share:.0%} buyback / "
                f"{self.staker_share:.0%} stakers / {self.treasury_share:.0%} treasury")


# ---------------------------------------------------------------------------
# Buyback and burn
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BurnResult:
    """Market purchases and burns for one month; USD amounts and token amounts"""

    purchase_tokens: float = 0.0
    tokens_burned: float = 0.0
    cash_to_stakers: float = 0.0
    primary_tokens_burned: float = 0.0
    secondary_tokens_burned: float = 0.0
    buyback_usd: float = 0.0
    auto_compound_usd: float = 0.0
    buying_pressure_usd: float = 0.0
    staked_tokens_added: float = 0.0
    error: Optional[str] = None

    @property
    def unmatched_purchase_tokens(self) -> float:
        """Purchased tokens not matched by a burn (legacy treasury shortfall)"""
        return max(0.0, self.purchase_tokens - self.tokens_burned)


class BuybackStrategy(ABC):
    """Abstract base class for purchase-and-burn mechanisms"""

    variant: MechanismVariant

    @abstractmethod
    def _execute(self, distribution: Distribution, price: float, treasury_balance: float) -> BurnResult:
        pass

    @abstractmethod
    def get_description(self) -> str:
        pass

    def execute(self, distribution: Distribution, price: float, treasury_balance: float) -> BurnResult:
        """
        Turn this month's allocation into market purchases and burns

        Args:
            distribution: Fee allocation for the month
            price: Current spot price
            treasury_balance: Primary treasury balance in tokens before this month

        Returns:
            BurnResult, all zero with an error message if any value is degenerate
        """
        if not _is_valid_price(price):
            return BurnResult(error=f"invalid spot price {price!r} in buyback")
        for name in ('buyback', 'staker_rewards', 'secondary_staker_rewards'):
            value = getattr(distribution, name)
            if not math.isfinite(value) or value < 0:
                return BurnResult(error=f"invalid {name} {value!r} in buyback")

        result = self._execute(distribution, price, treasury_balance)
        invalid = [
            f.name for f in fields(result)
            if f.name != 'error' and not math.isfinite(getattr(result, f.name))
        ]
        if invalid:
            return BurnResult(error=f"non-finite buyback values: {', '.join(invalid)}")
        return result


class TreasuryMatch(BuybackStrategy):
    """
    Legacy match-and-burn

    Stakers auto-compound part of their rewards by buying tokens at spot. The
    primary treasury burns the same amount, capped at its own balance. When
    the cap binds the purchased surplus is left unburned and still staked.
    """

    variant = MechanismVariant.LEGACY

    def __init__(self, auto_compound_rate: float):
        self.auto_compound_rate = auto_compound_rate

    def _execute(self, distribution: Distribution, price: float, treasury_balance: float) -> BurnResult:
        staker_rewards = distribution.total_staker_rewards
        auto_compound_usd = staker_rewards * self.auto_compound_rate
        cash_to_stakers = staker_rewards - auto_compound_usd

        purchase_tokens = auto_compound_usd / price if auto_compound_usd > 0 else 0.0
        primary_tokens_burned = min(purchase_tokens, max(treasury_balance, 0.0))

        return BurnResult(
            purchase_tokens=purchase_tokens,
            tokens_burned=primary_tokens_burned,
            cash_to_stakers=cash_to_stakers,
            primary_tokens_burned=primary_tokens_burned,
            auto_compound_usd=auto_compound_usd,
            buying_pressure_usd=auto_compound_usd,
            staked_tokens_added=purchase_tokens,
        )

    def get_description(self) -> str:
        return f"Treasury match-and-burn ({self.auto_compound_rate:.0%} auto-compound)"


class DirectBuyback(BuybackStrategy):
    """Direct buyback-and-burn: the buyback allocation buys tokens that are all burned"""

    variant = MechanismVariant.BUYBACK

    def _execute(self, distribution: Distribution, price: float, treasury_balance: float) -> BurnResult:
        buyback_usd = distribution.buyback
        purchase_tokens = buyback_usd / price
        return BurnResult(
            purchase_tokens=purchase_tokens,
            tokens_burned=purchase_tokens,
            cash_to_stakers=distribution.total_staker_rewards,
            buyback_usd=buyback_usd,
            buying_pressure_usd=buyback_usd,
        )

    def get_description(self) -> str:
        return "Direct buyback-and-burn"


# ---------------------------------------------------------------------------
# Price impact
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PriceImpact:
    permanent_impact: float = 0.0
    new_temporary_impact: float = 0.0
    total_temporary_impact: float = 0.0
    error: Optional[str] = None

    @property
    def multiplier(self) -> float:
        return 1.0 + self.permanent_impact + self.total_temporary_impact


def calculate_price_impact(tokens_burned: float, circulating_supply: float, buying_pressure_usd: float,
                           previous_temporary_impact: float, params: SimulationParameters) -> PriceImpact:
    """
    Calculate permanent and temporary price impact for one month

    Permanent impact = burned share of circulating supply x supply elasticity.
    Temporary impact = buying pressure relative to daily volume x buying
    pressure elasticity, added to last month's impact after geometric decay.

    Args:
        tokens_burned: Tokens burned this month
        circulating_supply: Circulating supply before this month's purchases
        buying_pressure_usd: USD spent on market purchases this month
        previous_temporary_impact: Temporary impact carried from last month
        params: Run parameters (elasticities, decay, volumes)

    Returns:
        PriceImpact, carrying an error if the multiplier is unusable
    """
    supply_reduction = tokens_burned / circulating_supply if circulating_supply > 0 else 0.0
    permanent_impact = supply_reduction * params.supply_elasticity

    market_depth = params.market_depth
    buy_pressure_ratio = buying_pressure_usd / market_depth if market_depth > 0 else 0.0
    new_temporary_impact = buy_pressure_ratio * params.buying_pressure_elasticity
    total_temporary_impact = previous_temporary_impact * (1 - params.decay_rate) + new_temporary_impact

    impact = PriceImpact(permanent_impact, new_temporary_impact, total_temporary_impact)
    multiplier = impact.multiplier
    if not math.isfinite(multiplier) or multiplier <= 0:
        return PriceImpact(
            permanent_impact, new_temporary_impact, total_temporary_impact,
            error=(f"invalid price multiplier {multiplier!r} "
                   f"(permanent={permanent_impact!r}, temporary={total_temporary_impact!r})"),
        )
    return impact


def apply_price_impact(price: float, impact: PriceImpact) -> float:
    """New spot price after impact, clamped to [MIN_PRICE, MAX_PRICE]"""
    return max(MIN_PRICE, min(MAX_PRICE, price * impact.multiplier))


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@dataclass
class SupplyPool:
    max_supply: float
    total_supply: float
    circulating_supply: float
    cumulative_burned: float = 0.0

    def apply_burn(self, tokens_burned: float, purchase_tokens: float) -> bool:
        """Remove burned tokens from total supply and purchases from circulation; True if clamped"""
        self.total_supply -= tokens_burned
        self.circulating_supply -= purchase_tokens
        self.cumulative_burned += tokens_burned

        clamped = False
        if self.total_supply < 0:
            self.total_supply = 0.0
            clamped = True
        if self.circulating_supply < 0:
            self.circulating_supply = 0.0
            clamped = True
        if self.circulating_supply > self.total_supply:
            self.circulating_supply = self.total_supply
            clamped = True
        return clamped


@dataclass
class TreasuryAccount:
    name: str
    balance: float = 0.0

    def apply(self, inflow_tokens: float, outflow_tokens: float) -> bool:
        """Add inflow, subtract outflow and clamp at zero; True if clamped"""
        self.balance += inflow_tokens - outflow_tokens
        if self.balance < 0:
            self.balance = 0.0
            return True
        return False


@dataclass
class StakingPool:
    total_staked: float = 0.0


@dataclass
class PriceState:
    spot_price: float
    temporary_impact: float = 0.0


@dataclass(frozen=True)
class HistoryRecord:
    """Snapshot of one completed month. Token amounts in tokens, flows in USD."""

    month: int
    price: float
    primary_treasury: float
    secondary_treasury: float
    total_supply: float
    circulating_supply: float
    total_staked: float
    tokens_burned: float
    purchase_tokens: float
    unmatched_purchase_tokens: float
    cumulative_burned: float
    permanent_impact: float
    new_temporary_impact: float
    temporary_impact: float
    cash_to_stakers: float
    buyback_usd: float
    auto_compound_usd: float
    primary_fees_usd: float
    secondary_fees_usd: float
    primary_treasury_inflow_usd: float
    secondary_treasury_inflow_usd: float
    staker_fees_usd: float
    treasury_fees_usd: float
    affiliate_fees_usd: float
    buyback_fees_usd: float
    treasury_runway_months: float
    price_change_pct: float
    supply_reduction_pct: float
    staking_ratio_pct: float


@dataclass(frozen=True)
class SingleRatio:
    """Legacy P/V: market cap over cash, burn value and auto-compound spend"""

    year: int
    market_cap: float
    price_to_value: Optional[float]


@dataclass(frozen=True)
class DualRatio:
    """Buyback P/V pair: USD cash-flow basis and burned-token market value basis"""

    year: int
    market_cap: float
    cash_flow_ratio: Optional[float]
    market_value_ratio: Optional[float]


AnnualRatio = Union[SingleRatio, DualRatio]


def _safe_ratio(numerator: float, denominator: float) -> Optional[float]:
    if denominator <= 0:
        return None
    value = numerator / denominator
    return value if math.isfinite(value) else None


def single_annual_ratio(window: Sequence[HistoryRecord], year: int) -> SingleRatio:
    """
    Legacy annual P/V from the trailing window

    Uses the last record's circulating supply and price for market cap and
    burn valuation.
    """
    last = window[-1]
    market_cap = last.circulating_supply * last.price
    annual_cash = sum(record.cash_to_stakers for record in window)
    annual_burn_value = sum(record.tokens_burned for record in window) * last.price
    annual_auto_compound = sum(record.auto_compound_usd for record in window)
    return SingleRatio(
        year=year,
        market_cap=market_cap,
        price_to_value=_safe_ratio(market_cap, annual_cash + annual_burn_value + annual_auto_compound),
    )


def dual_annual_ratio(window: Sequence[HistoryRecord], year: int) -> DualRatio:
    """Buyback annual P/V pair from the trailing window"""
    last = window[-1]
    market_cap = last.circulating_supply * last.price
    annual_cash = sum(record.cash_to_stakers for record in window)
    annual_buyback = sum(record.buyback_usd for record in window)
    annual_burn_value = sum(record.tokens_burned for record in window) * last.price
    return DualRatio(
        year=year,
        market_cap=market_cap,
        cash_flow_ratio=_safe_ratio(market_cap, annual_cash + annual_buyback),
        market_value_ratio=_safe_ratio(market_cap, annual_cash + annual_burn_value),
    )


@dataclass
class SimulationState:
    """Mutable state of one run, owned by BurnSimulation"""

    variant: MechanismVariant
    supply: SupplyPool
    primary_treasury: TreasuryAccount
    secondary_treasury: TreasuryAccount
    staking: StakingPool
    price: PriceState
    month: int = 0
    status: RunStatus = RunStatus.READY
    termination: Optional[TerminationReason] = None
    error: Optional[str] = None
    history: List[HistoryRecord] = field(default_factory=list)
    annual_ratios: Dict[int, AnnualRatio] = field(default_factory=dict)


@dataclass(frozen=True)
class StateSnapshot:
    """Read-only view of a run's current state and full history"""

    variant: MechanismVariant
    parameters: SimulationParameters
    month: int
    status: RunStatus
    termination: Optional[TerminationReason]
    error: Optional[str]
    spot_price: float
    temporary_impact: float
    max_supply: float
    total_supply: float
    circulating_supply: float
    cumulative_burned: float
    primary_treasury: float
    secondary_treasury: float
    total_staked: float
    history: Tuple[HistoryRecord, ...]
    annual_ratios: Mapping[int, AnnualRatio]

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.ABORTED)


def build_distribution_strategy(params: SimulationParameters) -> DistributionStrategy:
    if params.variant is MechanismVariant.LEGACY:
        return LegacySplit(params.staker_share, params.affiliate_share)
    return ConfigurableSplit(params.buyback_share, params.staker_share, params.treasury_share,
                             params.affiliate_share)


def build_buyback_strategy(params: SimulationParameters) -> BuybackStrategy:
    if params.variant is MechanismVariant.LEGACY:
        return TreasuryMatch(params.auto_compound_rate)
    return DirectBuyback()


_RATIO_CALCULATORS: Dict[MechanismVariant, Callable[[Sequence[HistoryRecord], int], AnnualRatio]] = {
    MechanismVariant.LEGACY: single_annual_ratio,
    MechanismVariant.BUYBACK: dual_annual_ratio,
}


# ---------------------------------------------------------------------------
# Simulation engine
# ---------------------------------------------------------------------------

class BurnSimulation:
    """
    Monthly buyback & burn simulation engine

    Each call to step() runs one month through fee generation, distribution,
    buyback/burn, price impact, state update and history recording. A run
    ends when the configured duration is reached, when the legacy primary
    treasury is depleted, or when a month produces degenerate numbers.
    """

    def __init__(self, config: SimulationConfig,
                 variant: Union[str, MechanismVariant] = MechanismVariant.BUYBACK):
        """
        Initialize simulation with configuration and mechanism design

        Args:
            config: Simulation configuration parameters
            variant: Mechanism design to simulate
        """
        self.config: Optional[SimulationConfig] = None
        self.params: Optional[SimulationParameters] = None
        self.state: Optional[SimulationState] = None
        self.initialize(config, variant)

    def initialize(self, config: SimulationConfig,
                   variant: Union[str, MechanismVariant] = MechanismVariant.BUYBACK) -> None:
        """
        Reset the run to the initial state derived from a configuration

        Raises:
            ConfigurationError: if the configuration is invalid; the existing
                state is left untouched
        """
        params = resolve_parameters(config, variant)

        self.config = config
        self.params = params
        self.distribution_strategy = build_distribution_strategy(params)
        self.buyback_strategy = build_buyback_strategy(params)
        self._annual_ratio = _RATIO_CALCULATORS[params.variant]
        self.state = SimulationState(
            variant=params.variant,
            supply=SupplyPool(
                max_supply=params.max_supply,
                total_supply=params.initial_total_supply,
                circulating_supply=params.initial_circulating_supply,
            ),
            primary_treasury=TreasuryAccount('primary', params.initial_primary_treasury),
            secondary_treasury=TreasuryAccount('secondary', params.initial_secondary_treasury),
            staking=StakingPool(params.initial_staked),
            price=PriceState(params.initial_price),
        )
        logger.info(
            "Initialized %s simulation for %d months (%s; %s)",
            params.variant.value, params.simulation_months,
            self.distribution_strategy.get_description(), self.buyback_strategy.get_description(),
        )

    def step(self) -> bool:
        """
        Advance the simulation by one month

        Returns:
            True if the run should continue, False once it has completed
            (full duration or legacy treasury depletion) or aborted
        """
        state = self.state
        if state.status in (RunStatus.COMPLETED, RunStatus.ABORTED):
            return False
        state.status = RunStatus.RUNNING
        if self._check_termination():
            return False

        params = self.params
        price = state.price.spot_price

        fees = calculate_fees(params)
        distribution = self.distribution_strategy.distribute(fees, price)
        if distribution.error:
            return self._abort(distribution.error)

        burn = self.buyback_strategy.execute(distribution, price, state.primary_treasury.balance)
        if burn.error:
            return self._abort(burn.error)

        impact = calculate_price_impact(
            burn.tokens_burned,
            state.supply.circulating_supply,
            burn.buying_pressure_usd,
            state.price.temporary_impact,
            params,
        )
        if impact.error:
            return self._abort(impact.error)

        self._apply_month(distribution, burn, impact)
        record = self._record_history(fees, distribution, burn, impact)
        state.month += 1

        if state.month % 12 == 0:
            year = state.month // 12
            state.annual_ratios[year] = self._annual_ratio(state.history[-12:], year)

        logger.debug(
            "Month %d: price=%.6f circulating=%.0f burned=%.0f primary_treasury=%.0f",
            record.month, record.price, record.circulating_supply, record.tokens_burned,
            record.primary_treasury,
        )
        return not self._check_termination()

    def _check_termination(self) -> bool:
        state = self.state
        if state.month >= self.params.simulation_months:
            return self._finish(TerminationReason.DURATION)
        if state.variant is MechanismVariant.LEGACY and state.primary_treasury.balance <= 0:
            return self._finish(TerminationReason.DEPLETION)
        return False

    def _finish(self, reason: TerminationReason) -> bool:
        state = self.state
        state.status = RunStatus.COMPLETED
        state.termination = reason
        if reason is TerminationReason.DEPLETION:
            logger.info("Primary treasury depleted; simulation ended at month %d", state.month)
        else:
            logger.info("Simulation completed at month %d", state.month)
        return True

    def _abort(self, error: str) -> bool:
        state = self.state
        state.status = RunStatus.ABORTED
        state.termination = TerminationReason.ERROR
        state.error = error
        logger.error("Simulation aborted at month %d: %s", state.month, error)
        return False

    def _apply_month(self, distribution: Distribution, burn: BurnResult, impact: PriceImpact) -> None:
        """Apply treasury, staking, supply and price changes for the month"""
        state = self.state
        month = state.month + 1
        price = state.price.spot_price

        treasury_flows = (
            (state.primary_treasury, distribution.primary_treasury_inflow / price, burn.primary_tokens_burned),
            (state.secondary_treasury, distribution.secondary_treasury_inflow / price, burn.secondary_tokens_burned),
        )
        for account, inflow_tokens, outflow_tokens in treasury_flows:
            if account.apply(inflow_tokens, outflow_tokens):
                logger.debug("%s treasury clamped to zero at month %d", account.name, month)

        if burn.staked_tokens_added > 0:
            state.staking.total_staked += burn.staked_tokens_added

        if state.supply.apply_burn(burn.tokens_burned, burn.purchase_tokens):
            logger.debug("Supply clamped at month %d", month)

        new_price = apply_price_impact(price, impact)
        if new_price in (MIN_PRICE, MAX_PRICE):
            logger.debug("Price clamped to %s at month %d", new_price, month)
        state.price.spot_price = new_price
        state.price.temporary_impact = impact.total_temporary_impact

    def _record_history(self, fees: FeeBreakdown, distribution: Distribution, burn: BurnResult,
                        impact: PriceImpact) -> HistoryRecord:
        state = self.state
        params = self.params
        supply = state.supply
        price = state.price.spot_price

        primary_balance = state.primary_treasury.balance
        runway = primary_balance / burn.tokens_burned if burn.tokens_burned > 0 else math.inf
        initial_circulating = params.initial_circulating_supply

        record = HistoryRecord(
            month=state.month + 1,
            price=price,
            primary_treasury=primary_balance,
            secondary_treasury=state.secondary_treasury.balance,
            total_supply=supply.total_supply,
            circulating_supply=supply.circulating_supply,
            total_staked=state.staking.total_staked,
            tokens_burned=burn.tokens_burned,
            purchase_tokens=burn.purchase_tokens,
            unmatched_purchase_tokens=burn.unmatched_purchase_tokens,
            cumulative_burned=supply.cumulative_burned,
            permanent_impact=impact.permanent_impact,
            new_temporary_impact=impact.new_temporary_impact,
            temporary_impact=state.price.temporary_impact,
            cash_to_stakers=burn.cash_to_stakers,
            buyback_usd=burn.buyback_usd,
            auto_compound_usd=burn.auto_compound_usd,
            primary_fees_usd=fees.primary_fees,
            secondary_fees_usd=fees.secondary_fees,
            primary_treasury_inflow_usd=distribution.primary_treasury_inflow,
            secondary_treasury_inflow_usd=distribution.secondary_treasury_inflow,
            staker_fees_usd=distribution.total_staker_rewards,
            treasury_fees_usd=distribution.treasury_fees_total,
            affiliate_fees_usd=distribution.affiliate_cut,
            buyback_fees_usd=distribution.buyback,
            treasury_runway_months=runway,
            price_change_pct=(price - params.initial_price) / params.initial_price * 100,
            supply_reduction_pct=(supply.cumulative_burned / initial_circulating * 100
                                  if initial_circulating > 0 else 0.0),
            staking_ratio_pct=(state.staking.total_staked / supply.total_supply * 100
                               if supply.total_supply > 0 else 0.0),
        )
        state.history.append(record)
        return record

    def get_state(self) -> StateSnapshot:
        """Read-only snapshot of the current state and full history"""
        state = self.state
        return StateSnapshot(
            variant=state.variant,
            parameters=self.params,
            month=state.month,
            status=state.status,
            termination=state.termination,
            error=state.error,
            spot_price=state.price.spot_price,
            temporary_impact=state.price.temporary_impact,
            max_supply=state.supply.max_supply,
            total_supply=state.supply.total_supply,
            circulating_supply=state.supply.circulating_supply,
            cumulative_burned=state.supply.cumulative_burned,
            primary_treasury=state.primary_treasury.balance,
            secondary_treasury=state.secondary_treasury.balance,
            total_staked=state.staking.total_staked,
            history=tuple(state.history),
            annual_ratios=MappingProxyType(dict(state.annual_ratios)),
        )

    def run_simulation(self) -> StateSnapshot:
        """
        Run the remaining months until the simulation stops

        Returns:
            Final state snapshot
        """
        while self.step():
            pass
        return self.get_state()

    def get_summary_metrics(self) -> Dict[str, Any]:
        """
        Calculate summary metrics from the recorded history

        Returns:
            Dictionary of key performance indicators
        """
        history = self.state.history
        if not history:
            raise ValueError("Simulation must be run before calculating metrics")

        prices = np.array([record.price for record in history])
        burned = np.array([record.tokens_burned for record in history])
        final = history[-1]
        termination = self.state.termination

        return {
            'months_simulated': final.month,
            'termination': termination.value if termination else None,
            'final_price': final.price,
            'price_change_pct': final.price_change_pct,
            'max_price': float(np.max(prices)),
            'min_price': float(np.min(prices)),
            'final_circulating_supply': final.circulating_supply,
            'final_total_supply': final.total_supply,
            'cumulative_burned': final.cumulative_burned,
            'supply_reduction_pct': final.supply_reduction_pct,
            'average_monthly_burn': float(np.mean(burned)),
            'max_monthly_burn': float(np.max(burned)),
            'total_unmatched_purchase_tokens': float(sum(record.unmatched_purchase_tokens for record in history)),
            'total_cash_to_stakers': float(sum(record.cash_to_stakers for record in history)),
            'total_buyback_usd': float(sum(record.buyback_usd for record in history)),
            'total_auto_compound_usd': float(sum(record.auto_compound_usd for record in history)),
            'final_primary_treasury': final.primary_treasury,
            'final_secondary_treasury': final.secondary_treasury,
            'final_total_staked': final.total_staked,
            'final_treasury_runway_months': final.treasury_runway_months,
        }
