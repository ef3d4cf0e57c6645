import logging
import os
import dbus
import dbus.exceptions
import dbus.mainloop.glib

from discovery_source import (
    DiscoveryFilter,
    DiscoverySource,
    RawSighting,
    SightingCallback,
    SourceUnavailable,
)

logger = logging.getLogger(__name__)

# Transport passed to SetDiscoveryFilter ("le", "bredr" or "auto")
BLUEZ_DISCOVERY_TRANSPORT = os.getenv("BLUEZ_DISCOVERY_TRANSPORT", "le")

# BlueZ D-Bus constants
BLUEZ_SERVICE = "org.bluez"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
DEVICE_INTERFACE = "org.bluez.Device1"
ADAPTER_INTERFACE = "org.bluez.Adapter1"

_system_bus: dbus.SystemBus | None = None
_dbus_mainloop_initialized = False


def _ensure_dbus_mainloop() -> None:
    global _dbus_mainloop_initialized
    if not _dbus_mainloop_initialized:
        dbus.mainloop.glib.DBusGMainLoop(set_as_default=True)
        _dbus_mainloop_initialized = True


def _get_system_bus() -> dbus.SystemBus:
    global _system_bus
    if _system_bus is None:
        _ensure_dbus_mainloop()
        _system_bus = dbus.SystemBus()
    return _system_bus


def _dbus_to_native(value):
    if isinstance(value, (dbus.Boolean,)):
        return bool(value)
    if isinstance(value, (dbus.Int16, dbus.Int32, dbus.Int64, dbus.UInt16, dbus.UInt32, dbus.UInt64)):
        return int(value)
    if isinstance(value, (dbus.String, dbus.ObjectPath)):
        return str(value)
    if isinstance(value, dbus.Array):
        return [_dbus_to_native(item) for item in value]
    if isinstance(value, dbus.Dictionary):
        return {key: _dbus_to_native(val) for key, val in value.items()}
    return value


def _get_managed_objects() -> dict:
    bus = _get_system_bus()
    manager = dbus.Interface(bus.get_object(BLUEZ_SERVICE, "/"), OBJECT_MANAGER_INTERFACE)
    return manager.GetManagedObjects()


def _find_adapter_path(managed_objects: dict) -> str | None:
    for path, interfaces in managed_objects.items():
        if ADAPTER_INTERFACE in interfaces:
            return str(path)
    return None


def _get_adapter(adapter_path: str, interface: str = ADAPTER_INTERFACE) -> dbus.Interface:
    bus = _get_system_bus()
    return dbus.Interface(bus.get_object(BLUEZ_SERVICE, adapter_path), interface)


def _normalize_mac(address: str | None) -> str | None:
    if not address:
        return None
    return address.upper()


def _address_from_path(path: str) -> str | None:
    """Derive the MAC address from a BlueZ device path (``.../dev_AA_BB_...``)."""
    tail = str(path).rsplit("/", 1)[-1]
    if not tail.startswith("dev_"):
        return None
    return _normalize_mac(tail[4:].replace("_", ":"))


def get_device_snapshot() -> dict[str, dict]:
    """Fetch a snapshot of all BlueZ Device1 objects in one D-Bus call."""
    devices: dict[str, dict] = {}
    try:
        managed_objects = _get_managed_objects()
    except Exception as e:
        logger.error(f"Error fetching BlueZ managed objects: {e}")
        return devices

    for path, interfaces in managed_objects.items():
        if DEVICE_INTERFACE not in interfaces:
            continue
        props = interfaces.get(DEVICE_INTERFACE, {})
        address = _normalize_mac(_dbus_to_native(props.get("Address")))
        if not address:
            continue
        devices[address] = {
            "path": str(path),
            "address": address,
            "name": _dbus_to_native(props.get("Name")),
            "rssi": _dbus_to_native(props.get("RSSI")),
        }

    return devices


class BlueZDiscoverySource(DiscoverySource):
    """
    Real discovery source backed by BlueZ over the system D-Bus.

    Discovery runs with an empty service filter so every advertising device
    is reported. Sightings are delivered from D-Bus signal handlers, which
    run on the GLib main loop installed by ``DBusGMainLoop``.
    """

    def __init__(self, transport: str = BLUEZ_DISCOVERY_TRANSPORT):
        self._transport = transport
        self._adapter_path: str | None = None
        self._receivers: list = []
        self._on_raw_sighting: SightingCallback | None = None
        self._paths: dict[str, str] = {}

    @property
    def adapter_path(self) -> str | None:
        return self._adapter_path

    @property
    def active(self) -> bool:
        return self._on_raw_sighting is not None

    def initialize(self) -> bool:
        """Locate and power the first Bluetooth adapter. Never raises."""
        try:
            adapter_path = _find_adapter_path(_get_managed_objects())
            if not adapter_path:
                logger.error("No Bluetooth adapter found!")
                return False
            props = _get_adapter(adapter_path, PROPERTIES_INTERFACE)
            if not _dbus_to_native(props.Get(ADAPTER_INTERFACE, "Powered")):
                props.Set(ADAPTER_INTERFACE, "Powered", dbus.Boolean(True))
                logger.info(f"Powered on adapter {adapter_path}")
            self._adapter_path = adapter_path
            logger.info(f"Found Bluetooth adapter: {adapter_path}")
            return True
        except Exception as e:
            logger.error(f"Failed to initialize Bluetooth: {e}")
            self._adapter_path = None
            return False

    def start(self, discovery_filter: DiscoveryFilter, on_raw_sighting: SightingCallback) -> None:
        if self.active:
            logger.debug("BlueZ discovery already running")
            return
        if not self._adapter_path:
            raise SourceUnavailable("Bluetooth adapter not initialized")

        try:
            bus = _get_system_bus()
            self._receivers = [
                bus.add_signal_receiver(
                    self._interfaces_added,
                    dbus_interface=OBJECT_MANAGER_INTERFACE,
                    signal_name="InterfacesAdded",
                ),
                bus.add_signal_receiver(
                    self._properties_changed,
                    dbus_interface=PROPERTIES_INTERFACE,
                    signal_name="PropertiesChanged",
                    arg0=DEVICE_INTERFACE,
                    path_keyword="path",
                ),
            ]
            adapter = _get_adapter(self._adapter_path)
            adapter.SetDiscoveryFilter(
                {
                    "Transport": self._transport,
                    "UUIDs": dbus.Array(list(discovery_filter.services), signature="s"),
                    "DuplicateData": dbus.Boolean(True),
                }
            )
            try:
                adapter.StartDiscovery()
            except dbus.exceptions.DBusException as e:
                if "InProgress" not in str(e):
                    raise
                logger.debug(f"Discovery already in progress: {e}")
        except dbus.exceptions.DBusException as e:
            self._remove_receivers()
            raise SourceUnavailable(f"StartDiscovery failed: {e}") from e

        self._on_raw_sighting = on_raw_sighting
        logger.info(
            "Started BlueZ discovery on %s (transport=%s, services=%s)",
            self._adapter_path,
            self._transport,
            list(discovery_filter.services) or "any",
        )
        self._emit_visible_devices()

    def _emit_visible_devices(self) -> None:
        """Report devices BlueZ already sees with a live RSSI."""
        for address, info in get_device_snapshot().items():
            self._paths[info["path"]] = address
            if info.get("rssi") is not None:
                self._emit(address, info["rssi"])

    def _emit(self, address: str, rssi) -> None:
        callback = self._on_raw_sighting
        if callback is None:
            return
        callback(RawSighting(address, rssi if rssi is None else int(rssi)))

    def _interfaces_added(self, path, interfaces) -> None:
        if DEVICE_INTERFACE not in interfaces:
            return
        props = interfaces[DEVICE_INTERFACE]
        address = _normalize_mac(_dbus_to_native(props.get("Address"))) or _address_from_path(path)
        if not address:
            return
        self._paths[str(path)] = address
        self._emit(address, _dbus_to_native(props.get("RSSI")))

    def _properties_changed(self, interface, changed, invalidated, path=None) -> None:
        if interface != DEVICE_INTERFACE or "RSSI" not in changed:
            return
        address = self._paths.get(str(path)) or _address_from_path(path)
        if not address:
            return
        self._emit(address, _dbus_to_native(changed["RSSI"]))

    def _remove_receivers(self) -> None:
        for receiver in self._receivers:
            try:
                receiver.remove()
            except Exception as e:
                logger.debug(f"Removing signal receiver failed: {e}")
        self._receivers = []

    def stop(self) -> None:
        if not self.active:
            return
        self._on_raw_sighting = None
        self._remove_receivers()
        try:
            _get_adapter(self._adapter_path).StopDiscovery()
        except dbus.exceptions.DBusException as e:
            logger.debug(f"StopDiscovery failed: {e}")
        logger.info("Stopped Bluetooth scanning")
