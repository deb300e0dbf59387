"""
Route tables for the telemetry monitor API.

Each module exposes an aiohttp ``RouteTableDef`` named ``routes``;
monitor.app registers them in order.
"""
