"""Tests for configuration validation and parameter resolution."""

import math

import pytest

from sim import (
    DAYS_PER_MONTH,
    ConfigurationError,
    MechanismVariant,
    SimulationConfig,
    rebalance_shares,
    resolve_parameters,
)


class TestSimulationConfigValidation:
    """Invalid configurations are rejected when built."""

    def test_defaults_are_valid(self) -> None:
        config = SimulationConfig()
        assert config.simulation_months == 36
        assert config.get_split_summary()['total_pct'] == pytest.approx(100.0)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"swap_volume_musd": -1.0},
            {"secondary_volume_musd": float("nan")},
            {"affiliate_cut_pct": 101.0},
            {"trading_fee_pct": -0.01},
            {"buying_pressure_decay_pct": 150.0},
            {"supply_elasticity": float("inf")},
            {"simulation_months": 0},
            {"simulation_months": 12.5},
            {"initial_price": 0.0},
            {"initial_price": 5000.0},
            {"secondary_staker_bps": 2.0, "secondary_fee_bps": 1.0},
            {"circulating_supply_m": 2500.0},
            {"total_supply": 4_000_000_000},
            {"primary_treasury_m": -5.0},
        ],
    )
    def test_out_of_range_values_raise(self, overrides) -> None:
        with pytest.raises(ConfigurationError):
            SimulationConfig(**overrides)

    def test_non_numeric_value_raises(self) -> None:
        with pytest.raises(ConfigurationError, match="must be a number"):
            SimulationConfig(swap_volume_musd="lots")

    def test_configuration_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            SimulationConfig(perp_volume_musd=-3)


class TestFromDict:
    """Building configurations from plain mappings."""

    def test_partial_mapping_keeps_defaults(self) -> None:
        config = SimulationConfig.from_dict({"swap_volume_musd": 10, "simulation_months": 12.0})
        assert config.swap_volume_musd == 10
        assert config.simulation_months == 12
        assert isinstance(config.simulation_months, int)
        assert config.perp_volume_musd == SimulationConfig().perp_volume_musd

    def test_unknown_keys_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown configuration keys"):
            SimulationConfig.from_dict({"woo_price": 0.1})

    def test_to_dict_round_trip(self) -> None:
        config = SimulationConfig(buyback_share_pct=40, staker_share_pct=40, treasury_share_pct=20)
        assert SimulationConfig.from_dict(config.to_dict()) == config


class TestResolveParameters:
    """Unit conversion and variant-specific field selection."""

    def test_volumes_become_monthly_usd(self, buyback_params) -> None:
        assert buyback_params.monthly_swap_volume == pytest.approx(49.4e6 * DAYS_PER_MONTH)
        assert buyback_params.monthly_perp_volume == pytest.approx(11.3e6 * DAYS_PER_MONTH)
        assert buyback_params.monthly_secondary_volume == pytest.approx(365.9e6 * DAYS_PER_MONTH)

    def test_rates_become_fractions(self, buyback_params) -> None:
        assert buyback_params.fee_rate == pytest.approx(0.0008)
        assert buyback_params.secondary_fee_rate == pytest.approx(0.0001)
        assert buyback_params.secondary_staker_rate == pytest.approx(0.00001)
        assert buyback_params.affiliate_share == pytest.approx(0.6)
        assert buyback_params.decay_rate == pytest.approx(0.15)

    def test_supplies_in_tokens(self, buyback_params) -> None:
        assert buyback_params.initial_circulating_supply == pytest.approx(1_909_200_000)
        assert buyback_params.initial_primary_treasury == pytest.approx(41_800_000)
        assert buyback_params.initial_secondary_treasury == pytest.approx(32_500_000)
        assert buyback_params.initial_staked == pytest.approx(629_500_000)

    def test_buyback_variant_uses_configurable_split(self, buyback_params) -> None:
        assert buyback_params.variant is MechanismVariant.BUYBACK
        assert buyback_params.buyback_share == pytest.approx(0.5)
        assert buyback_params.staker_share == pytest.approx(0.3)
        assert buyback_params.treasury_share == pytest.approx(0.2)
        assert buyback_params.auto_compound_rate == 0.0

    def test_legacy_variant_uses_fixed_split(self, legacy_params) -> None:
        assert legacy_params.variant is MechanismVariant.LEGACY
        assert legacy_params.buyback_share == 0.0
        assert legacy_params.staker_share == pytest.approx(0.8)
        assert legacy_params.treasury_share == pytest.approx(0.2)
        assert legacy_params.auto_compound_rate == pytest.approx(0.7)

    def test_market_depth_is_daily_swap_plus_secondary(self, buyback_params) -> None:
        expected = (buyback_params.monthly_swap_volume + buyback_params.monthly_secondary_volume) / 30
        assert buyback_params.market_depth == pytest.approx(expected)

    def test_buyback_split_must_sum_to_one(self) -> None:
        config = SimulationConfig(buyback_share_pct=60, staker_share_pct=30, treasury_share_pct=20)
        with pytest.raises(ConfigurationError, match="sum to 100%"):
            resolve_parameters(config, MechanismVariant.BUYBACK)

    def test_legacy_ignores_buyback_split(self) -> None:
        config = SimulationConfig(buyback_share_pct=60, staker_share_pct=30, treasury_share_pct=20)
        params = resolve_parameters(config, MechanismVariant.LEGACY)
        assert params.buyback_share == 0.0

    def test_mutated_config_is_revalidated(self) -> None:
        config = SimulationConfig()
        config.swap_volume_musd = -1
        with pytest.raises(ConfigurationError):
            resolve_parameters(config, "buyback")

    def test_overflowing_volume_rejected(self) -> None:
        config = SimulationConfig(swap_volume_musd=1e302)
        with pytest.raises(ConfigurationError, match="monthly_swap_volume"):
            resolve_parameters(config, MechanismVariant.BUYBACK)

    def test_overflowing_market_depth_rejected(self) -> None:
        config = SimulationConfig(swap_volume_musd=5e300, secondary_volume_musd=5e300)
        with pytest.raises(ConfigurationError, match="market_depth"):
            resolve_parameters(config, MechanismVariant.LEGACY)

    def test_huge_integer_input_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="must be a number"):
            SimulationConfig(perp_volume_musd=10 ** 400)

    def test_parameters_are_frozen(self, buyback_params) -> None:
        with pytest.raises(AttributeError):
            buyback_params.fee_rate = 0.5


class TestMechanismVariant:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("legacy", MechanismVariant.LEGACY),
            ("v1", MechanismVariant.LEGACY),
            ("BUYBACK", MechanismVariant.BUYBACK),
            ("v2", MechanismVariant.BUYBACK),
            (MechanismVariant.BUYBACK, MechanismVariant.BUYBACK),
        ],
    )
    def test_parse(self, raw, expected) -> None:
        assert MechanismVariant.parse(raw) is expected

    def test_unknown_variant(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown mechanism variant"):
            MechanismVariant.parse("v3")


class TestRebalanceShares:
    """Proportional auto-balancing of the three fee split percentages."""

    def test_others_keep_proportions(self) -> None:
        shares = {"buyback": 50, "staker": 30, "treasury": 20}
        assert rebalance_shares(shares, "buyback", 60) == {"buyback": 60, "staker": 24, "treasury": 16}

    def test_zero_others_split_equally(self) -> None:
        shares = {"buyback": 100, "staker": 0, "treasury": 0}
        assert rebalance_shares(shares, "buyback", 50) == {"buyback": 50, "staker": 25, "treasury": 25}

    @pytest.mark.parametrize(
        "shares, changed, value",
        [
            ({"a": 34, "b": 33, "c": 33}, "a", 35),
            ({"a": 100, "b": 0, "c": 0}, "a", 99),
            ({"a": 10, "b": 45, "c": 45}, "c", 7),
            ({"a": 1, "b": 1, "c": 98}, "c", 0),
        ],
    )
    def test_total_is_always_100(self, shares, changed, value) -> None:
        balanced = rebalance_shares(shares, changed, value)
        assert sum(balanced.values()) == 100
        assert all(v >= 0 for v in balanced.values())
        assert balanced[changed] == value
        assert list(balanced) == list(shares)

    def test_value_is_clamped(self) -> None:
        balanced = rebalance_shares({"a": 50, "b": 50}, "a", 150)
        assert balanced == {"a": 100, "b": 0}

    def test_unknown_share(self) -> None:
        with pytest.raises(ConfigurationError):
            rebalance_shares({"a": 50, "b": 50}, "z", 10)

    def test_balanced_shares_resolve(self) -> None:
        balanced = rebalance_shares(
            {"buyback_share_pct": 50, "staker_share_pct": 30, "treasury_share_pct": 20},
            "staker_share_pct", 45,
        )
        params = resolve_parameters(SimulationConfig(**balanced), MechanismVariant.BUYBACK)
        total = params.buyback_share + params.staker_share + params.treasury_share
        assert math.isclose(total, 1.0)
