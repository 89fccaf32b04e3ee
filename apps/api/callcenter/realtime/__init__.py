from callcenter.realtime.hub import RealtimeHub, caller_room, realtime_hub

__all__ = ["RealtimeHub", "caller_room", "realtime_hub"]
