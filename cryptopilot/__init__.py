"""CryptoPilot: periodic BTC/ETH dip-buying trading bot."""

__version__ = "0.1.0"
