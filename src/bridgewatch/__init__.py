"""
bridgewatch - status aggregation for a camera bridge stack

Watches the RTSP relay, the restream server, the emulated ONVIF server and
the MQTT broker, and serves one consistent status view of all of them.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
