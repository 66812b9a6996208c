from backend.app.services.relay.server import RelayState, SnapmakerRelay, init_relay, snapmaker_relay

__all__ = ["RelayState", "SnapmakerRelay", "init_relay", "snapmaker_relay"]
