from __future__ import annotations

import click


class ProxyError(click.ClickException):
    """Infrastructure failure that ends the proxy before or around the tool run."""

    exit_code = 1


class ConfigError(ProxyError):
    pass


class ResolutionError(ProxyError):
    pass


class ContainerNotFoundError(ResolutionError):
    pass


class UnknownDistributionError(ProxyError):
    pass


class BootError(ProxyError):
    pass


class BootTimeoutError(BootError):
    pass


class AttachError(ProxyError):
    pass


class UnsupportedStateError(BootError):
    pass
