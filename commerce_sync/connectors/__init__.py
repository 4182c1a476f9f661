"""Platform connectors"""
from typing import Dict, Type

from commerce_sync.connectors.base import BaseConnector, ConnectorPage, FetchWindow
from commerce_sync.connectors.custom import CustomConnector
from commerce_sync.connectors.shopify import ShopifyConnector
from commerce_sync.connectors.stripe import StripeConnector
from commerce_sync.connectors.woocommerce import WooCommerceConnector
from commerce_sync.errors import ConfigurationError
from commerce_sync.models.records import Platform

CONNECTORS: Dict[Platform, Type[BaseConnector]] = {
    Platform.SHOPIFY: ShopifyConnector,
    Platform.WOOCOMMERCE: WooCommerceConnector,
    Platform.STRIPE: StripeConnector,
    Platform.CUSTOM: CustomConnector,
}


def register_connector(platform: Platform, connector_class: Type[BaseConnector]) -> None:
    """Add or replace the connector used for a platform"""
    CONNECTORS[Platform.parse(platform)] = connector_class


def get_connector(platform, **kwargs) -> BaseConnector:
    """
    Build the connector for a platform

    Raises:
        ConfigurationError: for platforms without a registered connector
    """
    connector_class = CONNECTORS.get(Platform.parse(platform))
    if connector_class is None:
        raise ConfigurationError(f"No connector registered for platform: {platform}")
    return connector_class(**kwargs)


__all__ = [
    "BaseConnector",
    "ConnectorPage",
    "FetchWindow",
    "ShopifyConnector",
    "WooCommerceConnector",
    "StripeConnector",
    "CustomConnector",
    "CONNECTORS",
    "register_connector",
    "get_connector",
]
