"""Shared router dependencies."""

from fastapi import Request

from pawnshop.services.gateway.adapter import PaymentGateway


def get_gateway(request: Request) -> PaymentGateway:
    """The gateway adapter built once at startup."""
    return request.app.state.gateway
