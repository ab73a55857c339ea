from jits_shipping.models.order import Order, OrderItem, OrderStatus
