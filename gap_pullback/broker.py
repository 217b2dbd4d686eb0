"""
Broker client interface consumed by the trading engine.
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

from gap_pullback.models import Orderbook, OrderDetail, OrderResponse, Quote, TradeSide


class BrokerClient(ABC):
    """
    Abstract broker contract.

    Read methods return None when data is unavailable for any reason; the
    caller skips the affected item for the current cycle. place_order returns
    None when no broker response was obtained at all.
    """

    name: str = "broker"

    @abstractmethod
    def is_configured(self) -> bool:
        """
        Check that credentials and account details are present.

        Returns:
            True if orders can be placed
        """
        pass

    @abstractmethod
    def get_quote(self, code: str) -> Optional[Quote]:
        pass

    @abstractmethod
    def get_orderbook(self, code: str) -> Optional[Orderbook]:
        pass

    @abstractmethod
    def place_order(
        self,
        code: str,
        quantity: int,
        side: TradeSide,
        price: Optional[Decimal] = None
    ) -> Optional[OrderResponse]:
        """
        Submit an order.

        Args:
            code: Instrument code
            quantity: Shares
            side: BUY or SELL
            price: Limit price; None places a market order

        Returns:
            Broker response, or None if the request never completed
        """
        pass

    @abstractmethod
    def get_order_detail(self, order_id: str) -> Optional[OrderDetail]:
        pass

    @abstractmethod
    def get_available_cash(self) -> Optional[Decimal]:
        pass

    @abstractmethod
    def get_buyable_quantity(self, code: str, price: Decimal) -> Optional[int]:
        pass

    def warm_up(self) -> bool:
        """Prepare the session before the market opens. Returns success."""
        return True

    def close(self) -> None:
        """Release any session resources."""
