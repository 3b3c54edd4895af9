"""
Streamlit Web Application for Buyback & Burn Tokenomics Simulation

This application provides an interactive interface for comparing the legacy
match-and-burn mechanism with direct buyback-and-burn. Users adjust volumes,
fee splits and elasticities in the sidebar and inspect price, supply and
treasury trajectories as Altair charts.
"""

import logging

import streamlit as st
import altair as alt
import numpy as np
import pandas as pd

from sim import (
    BurnSimulation,
    ConfigurationError,
    MechanismVariant,
    RunStatus,
    SimulationConfig,
    TerminationReason,
    rebalance_shares,
)
from export import (
    annual_ratio_frame,
    config_from_json,
    config_to_json,
    history_frame,
    history_to_csv,
    snapshot_to_json,
)

logger = logging.getLogger(__name__)

# Configure Streamlit page
st.set_page_config(
    page_title="Buyback & Burn Tokenomics Simulation",
    page_icon=None,
    layout="wide",
    initial_sidebar_state="expanded"
)

SHARE_KEYS = ('buyback_share_pct', 'staker_share_pct', 'treasury_share_pct')
DURATION_OPTIONS = [12, 24, 36, 48, 60]

CHART_COLORS = {
    'primary_treasury': '#1e40af',
    'secondary_treasury': '#0ea5e9',
    'circulating': '#0d9488',
    'staked': '#059669',
    'price': '#8b5cf6',
    'burned': '#dc2626',
    'purchases': '#3b82f6',
    'permanent': '#f59e0b',
    'temporary': '#06b6d4',
}


def _widget_value(key: str, value):
    """Match widget value types: integer share sliders and duration, floats elsewhere"""
    if key in SHARE_KEYS or key == 'simulation_months':
        return int(round(value))
    return float(value)


def _init_session_defaults(defaults: SimulationConfig) -> None:
    """Seed widget state with default configuration values"""
    for key, value in defaults.to_dict().items():
        st.session_state.setdefault(key, _widget_value(key, value))


def _apply_loaded_config(config: SimulationConfig) -> None:
    for key, value in config.to_dict().items():
        st.session_state[key] = _widget_value(key, value)


def _on_share_change(changed: str) -> None:
    shares = {key: int(st.session_state[key]) for key in SHARE_KEYS}
    balanced = rebalance_shares(shares, changed, shares[changed])
    for key, value in balanced.items():
        st.session_state[key] = value


def create_sidebar_config() -> tuple[SimulationConfig, MechanismVariant]:
    """
    Create sidebar configuration interface with organized parameter groups

    Returns:
        Tuple of (SimulationConfig, MechanismVariant)
    """
    st.sidebar.title("Simulation Configuration")
    st.sidebar.markdown("Adjust parameters to compare mechanism designs")

    _init_session_defaults(SimulationConfig())

    uploaded = st.sidebar.file_uploader("Load configuration (JSON)", type=["json"])
    if uploaded is not None and st.session_state.get('loaded_config_name') != uploaded.name:
        try:
            _apply_loaded_config(config_from_json(uploaded.getvalue()))
            st.session_state.loaded_config_name = uploaded.name
            st.sidebar.success(f"Loaded {uploaded.name}")
        except ConfigurationError as exc:
            logger.warning("Rejected configuration file %s: %s", uploaded.name, exc)
            st.sidebar.error(f"Invalid configuration file: {exc}")

    variant_label = st.sidebar.radio(
        "Mechanism",
        ["Direct buyback-and-burn", "Legacy match-and-burn"],
        help="Buyback: a share of fees buys and burns tokens. Legacy: treasury burns tokens to match staker auto-compound purchases."
    )
    variant = MechanismVariant.LEGACY if variant_label.startswith("Legacy") else MechanismVariant.BUYBACK

    # TRADING VOLUMES
    with st.sidebar.expander("Trading Volumes", expanded=True):
        st.markdown("**Daily volumes in millions of USD**")
        st.number_input("Swap Volume ($M/day)", min_value=0.0, max_value=10_000.0, step=1.0, key='swap_volume_musd')
        st.number_input("Perp Volume ($M/day)", min_value=0.0, max_value=10_000.0, step=1.0, key='perp_volume_musd')
        st.number_input("Secondary Exchange Volume ($M/day)", min_value=0.0, max_value=50_000.0, step=10.0,
                        key='secondary_volume_musd')

    # FEES
    with st.sidebar.expander("Fees", expanded=False):
        st.number_input(
            "Trading Fee Rate (%)",
            min_value=0.0, max_value=5.0, step=0.01, format="%.3f", key='trading_fee_pct',
            help="Fee charged on swap and perp volume (0.08 = 0.08%)."
        )
        st.slider(
            "Affiliate Cut on Perp Fees (%)",
            min_value=0.0, max_value=100.0, step=1.0, key='affiliate_cut_pct',
            help="Taken from perp fees before any other split. Swap fees pay no affiliate cut."
        )
        st.number_input("Secondary Total Fee (bps)", min_value=0.0, max_value=100.0, step=0.1,
                        key='secondary_fee_bps')
        st.number_input("Secondary Staker Reward (bps)", min_value=0.0, max_value=100.0, step=0.01,
                        key='secondary_staker_bps')

    # MECHANISM PARAMETERS
    if variant is MechanismVariant.BUYBACK:
        with st.sidebar.expander("Fee Split", expanded=True):
            st.markdown("**Shares stay balanced at 100%**")
            st.slider("Buyback & Burn (%)", min_value=0, max_value=100, step=1, key='buyback_share_pct',
                      on_change=_on_share_change, args=('buyback_share_pct',))
            st.slider("Stakers (%)", min_value=0, max_value=100, step=1, key='staker_share_pct',
                      on_change=_on_share_change, args=('staker_share_pct',))
            st.slider("Treasury (%)", min_value=0, max_value=100, step=1, key='treasury_share_pct',
                      on_change=_on_share_change, args=('treasury_share_pct',))
            total = sum(st.session_state[key] for key in SHARE_KEYS)
            st.caption(f"Total: {total:.0f}%")
    else:
        with st.sidebar.expander("Legacy Mechanism", expanded=True):
            st.slider("Staker Share of Fees (%)", min_value=0.0, max_value=100.0, step=1.0,
                      key='legacy_staker_share_pct', help="Remainder goes to the primary treasury.")
            st.slider("Auto-compound Adoption (%)", min_value=0.0, max_value=100.0, step=1.0,
                      key='auto_compound_rate_pct',
                      help="Share of staker rewards used to buy tokens; the treasury burns a matching amount.")

    # PRICE DYNAMICS
    with st.sidebar.expander("Price Dynamics", expanded=False):
        st.slider("Supply Elasticity", min_value=0.0, max_value=50.0, step=0.5, key='supply_elasticity',
                  help="Permanent price change per unit of circulating supply burned.")
        st.slider("Buying Pressure Elasticity", min_value=0.0, max_value=10.0, step=0.1,
                  key='buying_pressure_elasticity')
        st.slider("Buying Pressure Decay (%/month)", min_value=0.0, max_value=100.0, step=1.0,
                  key='buying_pressure_decay_pct')

    # INITIAL STATE
    with st.sidebar.expander("Initial State", expanded=False):
        st.selectbox("Duration (months)", DURATION_OPTIONS, key='simulation_months')
        st.number_input("Initial Price ($)", min_value=0.0001, max_value=1000.0, step=0.001, format="%.4f",
                        key='initial_price')
        st.number_input("Circulating Supply (M)", min_value=0.0, step=10.0, key='circulating_supply_m')
        st.number_input("Total Staked (M)", min_value=0.0, step=10.0, key='initial_staked_m')
        st.number_input("Primary Treasury (M)", min_value=0.0, step=1.0, key='primary_treasury_m')
        st.number_input("Secondary Treasury (M)", min_value=0.0, step=1.0, key='secondary_treasury_m')

    values = {key: st.session_state[key] for key in SimulationConfig().to_dict()}
    config = SimulationConfig.from_dict(values)
    return config, variant


def _line_chart(df: pd.DataFrame, value_name: str, domain: list, colors: list, y_format: str = '.2f'):
    melted = df.melt(id_vars=['Month'], var_name='Series', value_name=value_name)
    return alt.Chart(melted).mark_line(strokeWidth=2).encode(
        x=alt.X('Month:Q', title='Months'),
        y=alt.Y(f'{value_name}:Q', title=value_name),
        color=alt.Color('Series:N', scale=alt.Scale(domain=domain, range=colors)),
        tooltip=[
            alt.Tooltip('Month:Q', title='Month'),
            alt.Tooltip('Series:N', title='Series'),
            alt.Tooltip(f'{value_name}:Q', title=value_name, format=y_format)
        ]
    ).properties(
        height=350
    ).interactive()


def create_charts(snapshot, metrics: dict) -> None:
    """
    Create visualization charts from a finished simulation using Altair

    Args:
        snapshot: Final StateSnapshot
        metrics: Summary metrics from BurnSimulation.get_summary_metrics
    """
    alt.data_transformers.enable('json')
    history = history_frame(snapshot)

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("Final Token Price", f"${metrics['final_price']:.4f}", f"{metrics['price_change_pct']:.1f}%")
    with col2:
        st.metric("Circulating Supply", f"{metrics['final_circulating_supply']/1e6:,.1f}M")
    with col3:
        burned_of_max = snapshot.cumulative_burned / snapshot.max_supply * 100 if snapshot.max_supply > 0 else 0
        st.metric("Cumulative Burned", f"{metrics['cumulative_burned']/1e6:,.1f}M", f"{burned_of_max:.2f}% of max")
    with col4:
        runway = metrics['final_treasury_runway_months']
        st.metric("Treasury Runway", f"{runway:.1f} months" if np.isfinite(runway) else "Unlimited")

    # Price
    st.subheader("Token Price")
    price_df = pd.DataFrame({'Month': history['month'], 'Price': history['price']})
    st.altair_chart(
        _line_chart(price_df, 'Price ($)', ['Price'], [CHART_COLORS['price']], y_format='$.4f'),
        use_container_width=True
    )

    col1, col2 = st.columns(2)
    with col1:
        st.subheader("Supply & Staking")
        supply_df = pd.DataFrame({
            'Month': history['month'],
            'Circulating': history['circulating_supply'] / 1e6,
            'Staked': history['total_staked'] / 1e6,
        })
        st.altair_chart(
            _line_chart(supply_df, 'Tokens (Millions)', ['Circulating', 'Staked'],
                        [CHART_COLORS['circulating'], CHART_COLORS['staked']]),
            use_container_width=True
        )
    with col2:
        st.subheader("Treasury Balances")
        treasury_df = pd.DataFrame({
            'Month': history['month'],
            'Primary': history['primary_treasury'] / 1e6,
            'Secondary': history['secondary_treasury'] / 1e6,
        })
        st.altair_chart(
            _line_chart(treasury_df, 'Tokens (Millions)', ['Primary', 'Secondary'],
                        [CHART_COLORS['primary_treasury'], CHART_COLORS['secondary_treasury']]),
            use_container_width=True
        )

    col1, col2 = st.columns(2)
    with col1:
        st.subheader("Monthly Purchases & Burns")
        burn_df = pd.DataFrame({
            'Month': history['month'],
            'Burned': history['tokens_burned'] / 1e6,
            'Market Purchases': history['purchase_tokens'] / 1e6,
        })
        st.altair_chart(
            _line_chart(burn_df, 'Tokens (Millions)', ['Burned', 'Market Purchases'],
                        [CHART_COLORS['burned'], CHART_COLORS['purchases']]),
            use_container_width=True
        )
    with col2:
        st.subheader("Price Impact Components")
        impact_df = pd.DataFrame({
            'Month': history['month'],
            'Permanent': history['permanent_impact'] * 100,
            'Temporary': history['temporary_impact'] * 100,
        })
        st.altair_chart(
            _line_chart(impact_df, 'Impact (%)', ['Permanent', 'Temporary'],
                        [CHART_COLORS['permanent'], CHART_COLORS['temporary']], y_format='.3f'),
            use_container_width=True
        )

    # Fee recipients
    st.subheader("Fee Distribution by Recipient")
    fees_df = pd.DataFrame({
        'Month': history['month'],
        'Stakers': history['staker_fees_usd'] / 1e6,
        'Treasury': history['treasury_fees_usd'] / 1e6,
        'Affiliates': history['affiliate_fees_usd'] / 1e6,
        'Buyback': history['buyback_fees_usd'] / 1e6,
    })
    fees_melted = fees_df.melt(id_vars=['Month'], var_name='Recipient', value_name='USD (Millions)')
    fees_chart = alt.Chart(fees_melted).mark_area(
        opacity=0.7,
        line={'strokeWidth': 2}
    ).encode(
        x=alt.X('Month:Q', title='Months'),
        y=alt.Y('USD (Millions):Q', stack='zero', title='USD (Millions)'),
        color=alt.Color('Recipient:N', scale=alt.Scale(
            domain=['Stakers', 'Treasury', 'Affiliates', 'Buyback'],
            range=['#059669', '#1e40af', '#9ca3af', '#dc2626']
        )),
        tooltip=[
            alt.Tooltip('Month:Q', title='Month'),
            alt.Tooltip('Recipient:N', title='Recipient'),
            alt.Tooltip('USD (Millions):Q', title='USD (M)', format='.3f')
        ]
    ).properties(
        height=350
    ).interactive()
    st.altair_chart(fees_chart, use_container_width=True)

    # Annual P/V ratios
    st.subheader("Annual P/V Ratios")
    ratios = annual_ratio_frame(snapshot)
    if ratios.empty:
        st.info("P/V ratios are computed at each 12-month boundary")
    else:
        st.dataframe(ratios, use_container_width=True)

    # Data export
    with st.expander("Data Export", expanded=False):
        st.markdown("Download simulation results for further analysis")
        st.dataframe(history.head(12), use_container_width=True)
        col1, col2 = st.columns(2)
        with col1:
            st.download_button(
                label="Download Results (CSV)",
                data=history_to_csv(snapshot),
                file_name="buyback_burn_simulation.csv",
                mime="text/csv"
            )
        with col2:
            st.download_button(
                label="Download Full Run (JSON)",
                data=snapshot_to_json(snapshot),
                file_name=f"buyback_burn_{snapshot.variant.value}.json",
                mime="application/json"
            )


def report_outcome(snapshot) -> None:
    """Tell the user how the run ended"""
    if snapshot.status is RunStatus.ABORTED:
        st.error(f"Simulation aborted at month {snapshot.month}: {snapshot.error}")
    elif snapshot.termination is TerminationReason.DEPLETION:
        st.warning(f"Primary treasury depleted: simulation ended early at month {snapshot.month}")
    else:
        st.success(f"Simulation completed: {snapshot.month} months")


def main():
    """Main Streamlit application"""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    st.title("Buyback & Burn Tokenomics Simulation")
    st.markdown("""
    **Compare legacy match-and-burn with direct buyback-and-burn**

    Fees from swap, perp and secondary exchange volume are split between affiliates, stakers,
    treasuries and (under buyback-and-burn) a buyback pool. Burns and buying pressure move the price
    month by month.
    """)

    try:
        config, variant = create_sidebar_config()
    except ConfigurationError as exc:
        st.error(f"Invalid configuration: {exc}")
        return

    st.sidebar.markdown("---")
    st.sidebar.download_button(
        "Save Configuration (JSON)",
        data=config_to_json(config),
        file_name="simulation_config.json",
        mime="application/json",
        use_container_width=True
    )
    run_simulation = st.sidebar.button("Run Simulation", type="primary", use_container_width=True)

    if run_simulation:
        try:
            with st.spinner("Running tokenomics simulation..."):
                sim = BurnSimulation(config, variant)
                snapshot = sim.run_simulation()
                st.session_state.snapshot = snapshot
                st.session_state.metrics = sim.get_summary_metrics() if snapshot.history else None
        except ConfigurationError as exc:
            logger.warning("Simulation not started: %s", exc)
            st.error(f"Invalid configuration: {exc}")
            st.session_state.pop('snapshot', None)

    if 'snapshot' in st.session_state:
        snapshot = st.session_state.snapshot
        report_outcome(snapshot)

        with st.expander("Current Configuration Summary", expanded=False):
            params = snapshot.parameters
            col1, col2, col3 = st.columns(3)
            with col1:
                st.markdown("**Volumes (monthly)**")
                st.write(f"Swap: ${params.monthly_swap_volume/1e9:.2f}B")
                st.write(f"Perp: ${params.monthly_perp_volume/1e9:.2f}B")
                st.write(f"Secondary: ${params.monthly_secondary_volume/1e9:.2f}B")
            with col2:
                st.markdown("**Fee Split**")
                st.write(f"Buyback: {params.buyback_share:.0%}")
                st.write(f"Stakers: {params.staker_share:.0%}")
                st.write(f"Treasury: {params.treasury_share:.0%}")
                st.write(f"Affiliate cut (perps): {params.affiliate_share:.0%}")
            with col3:
                st.markdown("**Price Dynamics**")
                st.write(f"Supply elasticity: {params.supply_elasticity:.1f}")
                st.write(f"Buying pressure elasticity: {params.buying_pressure_elasticity:.1f}")
                st.write(f"Decay: {params.decay_rate:.0%}/month")

        if st.session_state.get('metrics'):
            create_charts(snapshot, st.session_state.metrics)
    else:
        st.info("Configure parameters in the sidebar and click Run Simulation to begin analysis")

        col1, col2 = st.columns(2)
        with col1:
            st.markdown("""
            **Direct buyback-and-burn:**
            - Raise the buyback share to burn more supply
            - Treasuries only accumulate
            """)
        with col2:
            st.markdown("""
            **Legacy match-and-burn:**
            - Higher auto-compound adoption drains the primary treasury faster
            - The run ends early once the primary treasury is empty
            """)


if __name__ == "__main__":
    main()
