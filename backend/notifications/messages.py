"""
Push message builders.

Every payload is a flat dict of strings so it survives any transport. The
"type" key tells the client which handler to run.
"""

ORDER_PASSED_MINIMUM_TYPE = "1"
ORDER_CONFIRMATION_TYPE = "2"
PING_UPDATE_TYPE = "3"
GROUP_ORDER_FAILED_TYPE = "4"


def _user_fields(user):
    return {
        "userToken": str(user.user_token),
        "testUserId": str(user.test_user_id or ""),
    }


def _restaurant_fields(restaurant):
    return {
        "restaurantId": str(restaurant.restaurant_id),
        "restaurantName": str(restaurant.name or ""),
    }


def ping_update_message(user, title, message):
    return {
        "type": PING_UPDATE_TYPE,
        "title": str(title),
        "message": str(message),
        **_user_fields(user),
    }


def settlement_ping_texts(restaurant):
    """Title and text of the ping asking a participant's client to prove it is still connected."""
    return (
        f"Verifying payment for {restaurant.name}",
        f"{restaurant.name} has passed the minimum order amount. "
        "Groupeat is verifying that you are still connected so your order can be charged.",
    )


def order_passed_minimum_message(restaurant):
    return {
        "type": ORDER_PASSED_MINIMUM_TYPE,
        "title": f"{restaurant.name} passed the minimum",
        "message": f"The office group order from {restaurant.name} has passed the minimum order amount.",
        "groupOrderSum": str(restaurant.group_order_sum),
        "pooledOrderSum": str(restaurant.pooled_order_sum),
        "minimumPriceForOrder": str(restaurant.minimum_price_for_order),
        **_restaurant_fields(restaurant),
    }


def order_confirmation_message(restaurant, office, user, order):
    return {
        "type": ORDER_CONFIRMATION_TYPE,
        "title": f"Payment for order - {restaurant.name}",
        "message": (
            f"The office group order from {restaurant.name} has passed the minimum amount.\n"
            f"Your order was sent and you were charged {order.total_amount}."
        ),
        "addressCompanyId": str(office.company_id),
        "addressKey": str(office.address_key),
        "shoppingCartGuid": str(order.shopping_cart_guid),
        "totalAmount": str(order.total_amount),
        **_restaurant_fields(restaurant),
        **_user_fields(user),
    }


def unseen_order_canceled_message(restaurant, user):
    return {
        "type": GROUP_ORDER_FAILED_TYPE,
        "title": f"Order canceled - {restaurant.name}",
        "message": (
            f"{restaurant.name} passed the minimum while you were not connected, "
            "so your order was canceled."
        ),
        **_restaurant_fields(restaurant),
        **_user_fields(user),
    }


def could_not_pass_minimum_message(restaurant, user):
    return {
        "type": GROUP_ORDER_FAILED_TYPE,
        "title": f"Order failed - {restaurant.name}",
        "message": (
            f"One or more of the users who joined the office order from {restaurant.name} "
            "are not connected, so the automatic payment failed."
        ),
        **_restaurant_fields(restaurant),
        **_user_fields(user),
    }
