from .gateway_security import GatewayAuthPolicy, GatewaySecurityMiddleware, load_gateway_auth_policy_from_env

__all__ = ["GatewayAuthPolicy", "GatewaySecurityMiddleware", "load_gateway_auth_policy_from_env"]
