"""
errors.py — every failure the command channel can raise, in one place.

Rough severity ladder (what the caller should do):
- HandshakeError / TransportError   -> the connection is gone, tear down or reconnect.
- ChecksumMismatch / MalformedEnvelope -> drop this one line, keep the connection.
- CryptoError                        -> drop this one message (fatal only for
                                        CipherUnavailableError).
- MessageFormatError                 -> reply with an error string, keep going.
- NodeNotFound / ActuatorNotFound    -> registry lookups; the dispatcher turns
                                        these into response strings.
"""


class GreenlinkError(Exception):
    """Base error for the greenhouse command channel."""


class HandshakeError(GreenlinkError):
    """Key exchange failed; the connection cannot carry commands."""


class TransportError(GreenlinkError):
    """The underlying stream closed or failed mid read/write."""


class CryptoError(GreenlinkError):
    """A single message could not be encrypted or decrypted."""


class CipherUnavailableError(CryptoError):
    """The crypto backend does not provide the cipher at all."""


class ChecksumMismatch(GreenlinkError):
    """Envelope digest does not match the ciphertext it came with."""


class MalformedEnvelope(GreenlinkError):
    """Line is not shaped like `<ciphertext>:<digest>`."""


class MessageFormatError(GreenlinkError, ValueError):
    """A plaintext command line does not follow the command grammar."""


class NumericFieldError(MessageFormatError):
    """A field that must be a base-10 integer is not one."""


class NodeNotFound(GreenlinkError, LookupError):
    """No node with this id in the registry."""

    def __init__(self, node_id: int) -> None:
        super().__init__(f"Node {node_id} not found")
        self.node_id = node_id


class ActuatorNotFound(GreenlinkError, LookupError):
    """Node exists but has no actuator with this id."""

    def __init__(self, node_id: int, actuator_id: int) -> None:
        super().__init__(f"Actuator {actuator_id} not found on node {node_id}")
        self.node_id = node_id
        self.actuator_id = actuator_id
