"""
Desk Relay - LAN Remote Desktop Broker

Lets one device watch and drive the screen of another machine on the same
network. A small broker pairs a single screen source ("host") with any
number of viewers, relays their connection negotiation, streams paced JPEG
frames, and applies viewer input on the local machine.

Features:
- PIN login with brute-force lockout and 24h session tokens
- WebSocket broker for host/viewer signaling and binary frames
- Mouse and keyboard input via xdotool

Usage:
    desk-relay start   # Start the server
    desk-relay stop    # Stop the server
    desk-relay status  # Check server status
    desk-relay ip      # Show local IP address
"""

__version__ = "1.0.0"
__author__ = "Desk Relay"
