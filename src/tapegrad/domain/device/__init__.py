from ._device import Device, DeviceType

__all__ = [Device.__name__, DeviceType.__name__]
