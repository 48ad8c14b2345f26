"""Outbound API gateway selection for evidence fetches."""

import logging
from typing import Literal

import httpx
from pydantic import BaseModel

from ssp_workflow.models.evidence import GatewayConfig

logger = logging.getLogger(__name__)

TARGET_URL_PARAM = "targetUrl"


class GatewayNotConfiguredError(Exception):
    """Raised when neither gateway is enabled with a URL."""

    def __init__(self):
        super().__init__(
            "No API Gateway configured. Please configure AWS or Azure API Gateway in Settings."
        )


class GatewayRoute(BaseModel):
    """A resolved evidence request route."""

    gateway: Literal["aws", "azure"]
    url: str


def _wrap(gateway_url: str, target_url: str) -> str:
    return str(httpx.URL(gateway_url.strip()).copy_add_param(TARGET_URL_PARAM, target_url))


def resolve(config: GatewayConfig, target_url: str) -> GatewayRoute:
    """Route a target URL through the configured gateway.

    AWS always takes precedence over Azure when both are enabled.
    """
    if config.aws.usable:
        route = GatewayRoute(gateway="aws", url=_wrap(config.aws.url, target_url))
    elif config.azure.usable:
        route = GatewayRoute(gateway="azure", url=_wrap(config.azure.url, target_url))
    else:
        raise GatewayNotConfiguredError()

    logger.info("Routing evidence request through %s gateway", route.gateway.upper())
    return route
