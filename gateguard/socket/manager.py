class DeviceRegistry:
    """Which socket sessions are listening for which device token."""

    def __init__(self):
        self.sid_device: dict[str, str] = {}

    def bind(self, sid: str, device_token: str):
        self.sid_device[sid] = device_token

    def unbind_sid(self, sid: str) -> str | None:
        return self.sid_device.pop(sid, None)

    def is_connected(self, device_token: str) -> bool:
        return device_token in self.sid_device.values()


device_registry = DeviceRegistry()
