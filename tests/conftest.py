"""Shared fixtures for simulation tests."""

import pytest

from sim import (
    BurnSimulation,
    MechanismVariant,
    SimulationConfig,
    calculate_fees,
    resolve_parameters,
)


@pytest.fixture
def default_config():
    return SimulationConfig()


@pytest.fixture
def buyback_params(default_config):
    return resolve_parameters(default_config, MechanismVariant.BUYBACK)


@pytest.fixture
def legacy_params(default_config):
    return resolve_parameters(default_config, MechanismVariant.LEGACY)


@pytest.fixture
def default_fees(buyback_params):
    return calculate_fees(buyback_params)


@pytest.fixture
def buyback_sim(default_config):
    return BurnSimulation(default_config, MechanismVariant.BUYBACK)


@pytest.fixture
def legacy_sim(default_config):
    return BurnSimulation(default_config, MechanismVariant.LEGACY)


def run_months(sim, months):
    """Step a simulation up to `months` times, stopping early if it ends."""
    for _ in range(months):
        if not sim.step():
            break
    return sim.get_state()
