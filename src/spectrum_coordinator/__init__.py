"""
Spectrum Coordinator - Scheduling and allocation core for distributed RF sensors.

Treats a fleet of remote SDR sensing nodes as a pool of allocatable devices,
tracks their liveness and clock synchronization quality, and keeps
measurement jobs running when nodes disappear mid-execution.
"""

__version__ = "0.1.0"
