from decimal import Decimal, ROUND_HALF_UP

from rest_framework import serializers

from core_backend.utils.validation import sanitize_text

TWO_PLACES = Decimal("0.01")


def to_amount(value):
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


class OrderItemSerializer(serializers.Serializer):
    """
    Input serializer for one line item of an order, in the shape the client
    scrapes it from the ordering platform.
    """
    assignedUserId = serializers.IntegerField()
    categoryId = serializers.IntegerField()
    choices = serializers.JSONField()
    dishId = serializers.IntegerField()
    dishNotes = serializers.JSONField(allow_null=True)
    itemName = serializers.CharField(allow_blank=True, trim_whitespace=False)
    price = serializers.FloatField()
    quantity = serializers.IntegerField()
    shoppingCartDishId = serializers.IntegerField()

    def validate_choices(self, value):
        if not isinstance(value, (list, dict)):
            raise serializers.ValidationError("choices must be a list or an object")
        return value


class OrderInputSerializer(serializers.Serializer):
    """
    Input serializer for add_order / update_order.
    """
    items = OrderItemSerializer(many=True, allow_empty=False)
    totalAmount = serializers.FloatField()
    shoppingCartGuid = serializers.CharField(max_length=64)
    billingLines = serializers.ListField(child=serializers.JSONField(), required=False, default=list)

    def validate_totalAmount(self, value):
        if value < 0:
            raise serializers.ValidationError("totalAmount cannot be negative")
        return to_amount(value)


class RestaurantMetaDataSerializer(serializers.Serializer):
    """
    Restaurant metadata pushed by the client from the ordering platform.

    Known fields map onto Restaurant columns; every other key is kept in
    Restaurant.meta_data. String values are stripped of markup.
    """
    restaurantId = serializers.IntegerField(required=False)
    restaurantName = serializers.CharField(source="name", required=False, allow_blank=True, max_length=255)
    restaurantLogoUrl = serializers.CharField(source="logo_url", required=False, allow_blank=True, max_length=500)
    restaurantAddress = serializers.CharField(source="address", required=False, allow_blank=True, max_length=255)
    restaurantCityName = serializers.CharField(source="city_name", required=False, allow_blank=True, max_length=100)
    restaurantHeaderImageUrl = serializers.CharField(
        source="header_image_url", required=False, allow_blank=True, max_length=500
    )
    restaurantPhone = serializers.CharField(source="phone", required=False, allow_blank=True, max_length=40)
    minimumPriceForOrder = serializers.FloatField(source="minimum_price_for_order", required=False, allow_null=True)
    pooledOrderSum = serializers.FloatField(source="pooled_order_sum", required=False)
    isPooledOrderRestaurant = serializers.BooleanField(source="is_pooled_order_restaurant", required=False)

    STRING_FIELDS = ("name", "logo_url", "address", "city_name", "header_image_url", "phone")

    def validate_minimumPriceForOrder(self, value):
        if value is None:
            return None
        if value < 0:
            raise serializers.ValidationError("minimumPriceForOrder cannot be negative")
        return to_amount(value)

    def validate_pooledOrderSum(self, value):
        if value < 0:
            raise serializers.ValidationError("pooledOrderSum cannot be negative")
        return to_amount(value)

    def validate(self, attrs):
        for field in self.STRING_FIELDS:
            if field in attrs:
                attrs[field] = sanitize_text(attrs[field])

        extra = {
            key: sanitize_text(value)
            for key, value in self.initial_data.items()
            if key not in self.fields
        }
        attrs["meta_data"] = extra
        return attrs
