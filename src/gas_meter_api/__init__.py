"""FastAPI adapter for the gas-meter service.

Owns process concerns only: settings, wiring of the `gas_meter` components,
HTTP routes and the lifecycle of the background deposit reconcilers.

It must NOT be imported by `gas_meter`.
"""
