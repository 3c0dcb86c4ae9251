"""Error taxonomy for signaling and mesh negotiation."""


class MeshCallError(Exception):
    """Base class for all meshcall errors."""


class MediaAccessDenied(MeshCallError):
    """Local capture is unavailable. Fatal to the join attempt."""


class ChannelUnavailable(MeshCallError):
    """The relay could not be reached or the channel to it was lost."""


class ProtocolViolation(MeshCallError):
    """Malformed message, unknown peer reference or repeated join.

    Always non-fatal: the offending message is dropped.
    """


class NegotiationConflict(MeshCallError):
    """A second connection state was requested for a peer that has one."""

    def __init__(self, peer_id: str):
        super().__init__(f"Connection state already exists for peer {peer_id}")
        self.peer_id = peer_id


class TransportConnectivityFailure(MeshCallError):
    """Connectivity to a single peer failed after the restart attempt."""

    def __init__(self, peer_id: str, state: str):
        super().__init__(f"Connectivity to {peer_id} failed ({state})")
        self.peer_id = peer_id
        self.state = state
