# ==============================================================================
# FILE: core/errors.py
# PURPOSE: Error taxonomy for the telemetry pipeline.
# ==============================================================================


class TelemetryError(Exception):
    pass


class TransportError(TelemetryError):
    """Stream dropped or the core answered with a non-2xx status."""


class MalformedPayload(TelemetryError):
    """A pushed or fetched payload that is not a JSON object."""


class ActionError(TelemetryError):
    """A close-connection request that the core rejected or never answered."""
