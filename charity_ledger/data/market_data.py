"""
Market Data Integration

Quote providers used by the conditional order matcher and mark-to-market.
Every provider returns None instead of raising when a quote is unavailable.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional
import requests
import yfinance as yf
from charity_ledger.utils.constants import API_TIMEOUT_MEDIUM
from charity_ledger.utils.logging import get_logger
from config.settings import get_settings

logger = get_logger(__name__)

@dataclass(frozen=True)
class Quote:
    """Point-in-time price for one symbol."""
    symbol: str
    price: Decimal
    change_percent: Optional[Decimal] = None
    timestamp: Optional[datetime] = None

def _decimal(value) -> Decimal:
    return Decimal(str(value))

class QuoteProvider(ABC):
    
    @abstractmethod
    def get_quote(self, symbol: str) -> Optional[Quote]:
        """Current quote, or None when the provider cannot answer."""
        pass

class YahooQuoteProvider(QuoteProvider):
    """Quotes from Yahoo Finance via yfinance."""
    
    def get_quote(self, symbol: str) -> Optional[Quote]:
        symbol = symbol.upper()
        try:
            t = yf.Ticker(symbol)
            price = None
            previous_close = None
            
            fi = getattr(t, "fast_info", None)
            if fi is not None:
                if getattr(fi, "last_price", None):
                    price = float(fi.last_price)
                if getattr(fi, "previous_close", None):
                    previous_close = float(fi.previous_close)
            
            if price is None:
                daily = t.history(period="1d")
                if not daily.empty and "Close" in daily.columns:
                    price = float(daily["Close"].dropna().iloc[-1])
            
            if price is None or price <= 0:
                logger.warning("No price available", symbol=symbol)
                return None
            
            change_percent = None
            if previous_close:
                change_percent = _decimal(round((price - previous_close) / previous_close * 100, 4))
            
            return Quote(
                symbol=symbol,
                price=_decimal(price),
                change_percent=change_percent,
                timestamp=datetime.utcnow()
            )
        except Exception as e:
            logger.warning(f"Failed to get quote for {symbol}: {e}")
            return None

class AlpacaQuoteProvider(QuoteProvider):
    """Latest trade price from the Alpaca market data API."""
    
    def __init__(self, api_key: str = None, api_secret: str = None, base_url: str = None):
        settings = get_settings()
        self.base_url = base_url or settings.ALPACA_DATA_URL
        self.headers = {
            'APCA-API-KEY-ID': api_key or settings.ALPACA_API_KEY,
            'APCA-API-SECRET-KEY': api_secret or settings.ALPACA_API_SECRET,
            'Content-Type': 'application/json'
        }
    
    def get_quote(self, symbol: str) -> Optional[Quote]:
        symbol = symbol.upper()
        try:
            url = f"{self.base_url}/v2/stocks/{symbol}/trades/latest"
            response = requests.get(url, headers=self.headers, timeout=API_TIMEOUT_MEDIUM)
            
            if response.status_code != 200:
                logger.warning("Quote request rejected", symbol=symbol, status=response.status_code)
                return None
            
            trade = response.json().get('trade', {})
            price = trade.get('p')
            if not price:
                return None
            
            return Quote(symbol=symbol, price=_decimal(price), timestamp=datetime.utcnow())
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Failed to get quote for {symbol}: {e}")
            return None

def build_quote_provider() -> QuoteProvider:
    settings = get_settings()
    if settings.QUOTE_PROVIDER == 'alpaca':
        return AlpacaQuoteProvider()
    return YahooQuoteProvider()
