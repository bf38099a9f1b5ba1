"""Seed markets and per-quote parameters for the exchange simulator."""

# Pair name -> (market id, starting price), roughly as listed when the project started
SEED_MARKETS: dict[str, tuple[int, float]] = {
    "BTC_ETH": (148, 0.0345),
    "BTC_LTC": (50, 0.0071),
    "BTC_XRP": (117, 0.0000315),
    "BTC_XMR": (114, 0.0064),
    "BTC_DOGE": (27, 0.00000024),
    "BTC_ETC": (171, 0.00065),
    "USDT_BTC": (121, 9650.0),
    "USDT_ETH": (149, 333.0),
    "USDT_LTC": (123, 68.5),
    "USDT_XRP": (127, 0.304),
    "ETH_ETC": (172, 0.0189),
}

# Per-quote GBM parameters
# sigma: annualized volatility, mu: annualized drift
QUOTE_PARAMS: dict[str, dict[str, float]] = {
    "BTC": {"sigma": 0.60, "mu": 0.0},
    "USDT": {"sigma": 0.80, "mu": 0.05},
    "ETH": {"sigma": 0.70, "mu": 0.0},
}

# Default parameters for quotes not in the list above
DEFAULT_PARAMS: dict[str, float] = {"sigma": 0.75, "mu": 0.0}

# Correlation coefficients for the simulator's Cholesky decomposition
SAME_QUOTE_CORR = 0.5  # Pairs priced in the same currency move together
CROSS_QUOTE_CORR = 0.2

# Decimal places the exchange quotes prices with
PRICE_DECIMALS = 8

# Pairs the simulator may list at random while running
LISTING_CANDIDATES: tuple[str, ...] = (
    "BTC_BCH",
    "BTC_ZEC",
    "BTC_DASH",
    "USDT_XMR",
    "USDT_DOGE",
    "ETH_ZEC",
)
