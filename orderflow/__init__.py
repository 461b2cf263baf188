"""orderflow — マーケットプレイスの注文フルフィルメント (Event Sourcing + Saga)"""

__version__ = "0.1.0"
