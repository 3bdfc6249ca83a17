from .clicksend import ClickSendClient
from .dispatcher import DeliveryDispatcher

__all__ = ["ClickSendClient", "DeliveryDispatcher"]
