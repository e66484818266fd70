"""
greenlink — secure command channel between a greenhouse simulator and its control panel.

Layers, bottom up:
- crypto:     SHA-256 checksum, AES-128-CBC, DH maths over RFC 3526 group 14.
- framing:    newline framing and the `ciphertext:digest` envelope.
- handshake:  per-connection DH key exchange (mandatory, no plaintext fallback).
- messages:   the space-separated command language as typed values.
- greenhouse: nodes, sensors, actuators, the shared registry and ACK ledger.
- dispatcher: runs commands against the registry, always answering with text.
- node:       server sessions, the accept loop and the control-panel client.

Settings come from GREENLINK_* environment variables (see config.py).
"""
__all__ = [
    "config",
    "crypto",
    "dispatcher",
    "errors",
    "framing",
    "greenhouse",
    "handshake",
    "messages",
    "node",
    "run_node",
]
