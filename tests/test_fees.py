"""Tests for the fee engine and fee distribution rules."""

import math

import pytest

from sim import (
    ConfigurableSplit,
    FeeBreakdown,
    LegacySplit,
    MechanismVariant,
    SimulationConfig,
    build_distribution_strategy,
    calculate_fees,
    resolve_parameters,
)


class TestCalculateFees:
    """Monthly gross fees from the default volumes"""

    def test_primary_fees(self, default_fees) -> None:
        assert default_fees.swap_fees == pytest.approx(1_185_600)
        assert default_fees.perp_fees == pytest.approx(271_200)
        assert default_fees.primary_fees == pytest.approx(1_456_800)

    def test_secondary_fees(self, default_fees) -> None:
        assert default_fees.secondary_fees == pytest.approx(1_097_700)
        assert default_fees.secondary_staker_rewards == pytest.approx(109_770)
        assert default_fees.secondary_treasury_inflow == pytest.approx(987_930)

    def test_same_fees_for_both_variants(self, buyback_params, legacy_params) -> None:
        assert calculate_fees(buyback_params) == calculate_fees(legacy_params)

    def test_zero_volume_means_zero_fees(self) -> None:
        config = SimulationConfig(swap_volume_musd=0, perp_volume_musd=0, secondary_volume_musd=0)
        fees = calculate_fees(resolve_parameters(config))
        assert fees == FeeBreakdown(0.0, 0.0, 0.0, 0.0, 0.0)


class TestConfigurableSplit:
    """Buyback/staker/treasury allocation"""

    def test_default_allocation(self, buyback_params, default_fees) -> None:
        distribution = build_distribution_strategy(buyback_params).distribute(default_fees, 0.065)
        net_primary = 1_185_600 + 271_200 * 0.4

        assert distribution.error is None
        assert distribution.variant is MechanismVariant.BUYBACK
        assert distribution.affiliate_cut == pytest.approx(162_720)
        assert distribution.buyback == pytest.approx(net_primary * 0.5)
        assert distribution.staker_rewards == pytest.approx(net_primary * 0.3)
        assert distribution.primary_treasury_inflow == pytest.approx(net_primary * 0.2)
        assert distribution.secondary_staker_rewards == pytest.approx(109_770)
        assert distribution.secondary_treasury_inflow == pytest.approx(987_930)

    @pytest.mark.parametrize(
        "buyback, staker, treasury",
        [(0.5, 0.3, 0.2), (0.33, 0.33, 0.34), (1.0, 0.0, 0.0), (0.0, 0.0, 1.0), (0.125, 0.625, 0.25)],
    )
    def test_primary_fees_are_conserved(self, default_fees, buyback, staker, treasury) -> None:
        split = ConfigurableSplit(buyback, staker, treasury, affiliate_share=0.6)
        distribution = split.distribute(default_fees, 0.1)

        allocated = (distribution.affiliate_cut + distribution.buyback
                     + distribution.staker_rewards + distribution.primary_treasury_inflow)
        assert allocated == pytest.approx(default_fees.primary_fees)

    def test_affiliate_cut_only_from_perp(self, default_fees) -> None:
        split = ConfigurableSplit(1.0, 0.0, 0.0, affiliate_share=1.0)
        distribution = split.distribute(default_fees, 0.1)
        assert distribution.affiliate_cut == pytest.approx(default_fees.perp_fees)
        assert distribution.buyback == pytest.approx(default_fees.swap_fees)

    def test_description(self) -> None:
        split = ConfigurableSplit(0.5, 0.3, 0.2, affiliate_share=0.6)
        assert split.get_description() == "Configurable split: 50% buyback / 30% stakers / 20% treasury"


class TestLegacySplit:
    def test_no_buyback_allocation(self, legacy_params, default_fees) -> None:
        distribution = build_distribution_strategy(legacy_params).distribute(default_fees, 0.065)
        net_primary = 1_185_600 + 271_200 * 0.4

        assert isinstance(build_distribution_strategy(legacy_params), LegacySplit)
        assert distribution.variant is MechanismVariant.LEGACY
        assert distribution.buyback == 0.0
        assert distribution.staker_rewards == pytest.approx(net_primary * 0.8)
        assert distribution.primary_treasury_inflow == pytest.approx(net_primary * 0.2)
        assert distribution.total_staker_rewards == pytest.approx(net_primary * 0.8 + 109_770)
        assert distribution.treasury_fees_total == pytest.approx(net_primary * 0.2 + 987_930)

    def test_primary_fees_are_conserved(self, default_fees) -> None:
        distribution = LegacySplit(0.65, affiliate_share=0.6).distribute(default_fees, 0.065)
        allocated = distribution.affiliate_cut + distribution.staker_rewards + distribution.primary_treasury_inflow
        assert allocated == pytest.approx(default_fees.primary_fees)


class TestDistributionErrors:
    """Degenerate inputs produce an empty distribution carrying an error"""

    @pytest.mark.parametrize("price", [0.0, -1.0, math.nan, math.inf])
    def test_invalid_price(self, default_fees, price) -> None:
        distribution = ConfigurableSplit(0.5, 0.3, 0.2, 0.6).distribute(default_fees, price)
        assert distribution.error is not None
        assert "invalid spot price" in distribution.error
        assert distribution.buyback == 0.0
        assert distribution.total_staker_rewards == 0.0

    def test_non_finite_fraction(self, default_fees) -> None:
        distribution = ConfigurableSplit(math.nan, 0.3, 0.2, 0.6).distribute(default_fees, 0.1)
        assert distribution.error == "non-finite fee fractions: buyback_share"

    def test_non_finite_affiliate_share(self, default_fees) -> None:
        distribution = LegacySplit(0.8, math.inf).distribute(default_fees, 0.1)
        assert "affiliate_share" in distribution.error
