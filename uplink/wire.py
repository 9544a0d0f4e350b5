"""
Wire Encoder
Protobuf encoding of exercise snapshots and waypoints.

Every frame on the socket is a serialized SocketData envelope:

    SocketData { int32 data_type = 1; bytes data = 2; }

where `data` is the serialized ExerciseData or WaypointsListData message
and `data_type` tells the server which one it is. The schema is built
in-process from a FileDescriptorProto so no protoc step is needed; field
numbers are the contract with the server and must not be renumbered.
"""

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError, Message

from core.types import ExerciseSnapshot, ExerciseStatus, Waypoint, WaypointPair

log = logging.getLogger(__name__)

_PACKAGE = "tom.uplink"

_F = descriptor_pb2.FieldDescriptorProto


class WireError(Exception):
    """Raised when an envelope cannot be decoded."""
    pass


class DataType(IntEnum):
    """Type tags carried in SocketData.data_type."""
    EXERCISE_DATA = 1
    WAYPOINTS = 2


def _add_message(file_proto, name, fields):
    msg = file_proto.message_type.add(name=name)
    for field_name, number, field_type, extra in fields:
        field = msg.field.add(
            name=field_name,
            number=number,
            type=field_type,
            label=extra.get("label", _F.LABEL_OPTIONAL),
        )
        if "type_name" in extra:
            field.type_name = extra["type_name"]
    return msg


def _build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="tom_uplink/wire.proto",
        package=_PACKAGE,
        syntax="proto3",
    )
    _add_message(file_proto, "ExerciseData", [
        ("start_time", 1, _F.TYPE_INT64, {}),
        ("update_time", 2, _F.TYPE_INT64, {}),
        ("duration", 3, _F.TYPE_INT64, {}),
        ("curr_lat", 4, _F.TYPE_DOUBLE, {}),
        ("curr_lng", 5, _F.TYPE_DOUBLE, {}),
        ("bearing", 6, _F.TYPE_INT32, {}),
        ("distance", 7, _F.TYPE_DOUBLE, {}),
        ("calories", 8, _F.TYPE_DOUBLE, {}),
        ("heart_rate", 9, _F.TYPE_DOUBLE, {}),
        ("heart_rate_avg", 10, _F.TYPE_DOUBLE, {}),
        ("steps", 11, _F.TYPE_INT32, {}),
        ("speed", 12, _F.TYPE_DOUBLE, {}),
        ("speed_avg", 13, _F.TYPE_DOUBLE, {}),
        ("current_status", 14, _F.TYPE_STRING, {}),
        ("dest_lat", 15, _F.TYPE_DOUBLE, {}),
        ("dest_lng", 16, _F.TYPE_DOUBLE, {}),
    ])
    _add_message(file_proto, "Waypoint", [
        ("lat", 1, _F.TYPE_DOUBLE, {}),
        ("lng", 2, _F.TYPE_DOUBLE, {}),
    ])
    _add_message(file_proto, "WaypointsListData", [
        ("waypoints_list", 1, _F.TYPE_MESSAGE,
         {"label": _F.LABEL_REPEATED, "type_name": f".{_PACKAGE}.Waypoint"}),
    ])
    _add_message(file_proto, "SocketData", [
        ("data_type", 1, _F.TYPE_INT32, {}),
        ("data", 2, _F.TYPE_BYTES, {}),
    ])
    return file_proto


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(_build_file_descriptor().SerializeToString())


def _message_class(name: str):
    return message_factory.GetMessageClass(_POOL.FindMessageTypeByName(f"{_PACKAGE}.{name}"))


ExerciseData = _message_class("ExerciseData")
WaypointMessage = _message_class("Waypoint")
WaypointsListData = _message_class("WaypointsListData")
SocketData = _message_class("SocketData")

_PAYLOAD_CLASSES = {
    DataType.EXERCISE_DATA: ExerciseData,
    DataType.WAYPOINTS: WaypointsListData,
}


@dataclass(frozen=True)
class WireEnvelope:
    type_tag: int
    payload: bytes


def _or_zero(value):
    return 0 if value is None else value


def build_exercise_message(snapshot: Optional[ExerciseSnapshot]):
    """
    Build the ExerciseData message for a snapshot.

    Missing numeric fields are written as zero and a missing status as
    "UNKNOWN". A missing snapshot (no exercise recorded yet) produces a
    message with every field at its default.
    """
    if snapshot is None:
        return ExerciseData(current_status=ExerciseStatus.UNKNOWN.value)

    status = snapshot.status.value if snapshot.status is not None else ExerciseStatus.UNKNOWN.value
    return ExerciseData(
        start_time=_or_zero(snapshot.start_time),
        update_time=_or_zero(snapshot.update_time),
        duration=_or_zero(snapshot.active_duration),
        curr_lat=_or_zero(snapshot.curr_lat),
        curr_lng=_or_zero(snapshot.curr_lng),
        bearing=_or_zero(snapshot.bearing),
        distance=_or_zero(snapshot.distance),
        calories=_or_zero(snapshot.calories),
        heart_rate=_or_zero(snapshot.heart_rate),
        heart_rate_avg=_or_zero(snapshot.heart_rate_avg),
        steps=_or_zero(snapshot.steps),
        speed=_or_zero(snapshot.speed),
        speed_avg=_or_zero(snapshot.speed_avg),
        current_status=status,
        dest_lat=_or_zero(snapshot.dest_lat),
        dest_lng=_or_zero(snapshot.dest_lng),
    )


def build_waypoints(snapshot: Optional[ExerciseSnapshot]) -> WaypointPair:
    """Current location first, destination appended only when fully known."""
    if snapshot is None or not snapshot.has_current_location:
        return []
    waypoints = [Waypoint(lat=snapshot.curr_lat, lng=snapshot.curr_lng)]
    if snapshot.has_destination:
        waypoints.append(Waypoint(lat=snapshot.dest_lat, lng=snapshot.dest_lng))
    return waypoints


def build_waypoints_message(waypoints: List[Waypoint]):
    msg = WaypointsListData()
    for point in waypoints:
        msg.waypoints_list.add(lat=point.lat, lng=point.lng)
    return msg


def wrap(data_type: DataType, message: Message) -> bytes:
    """Wrap a serialized message in a SocketData envelope."""
    envelope = SocketData(
        data_type=int(data_type),
        data=message.SerializeToString(deterministic=True),
    )
    return envelope.SerializeToString(deterministic=True)


def encode_snapshot(snapshot: Optional[ExerciseSnapshot]) -> bytes:
    return wrap(DataType.EXERCISE_DATA, build_exercise_message(snapshot))


def encode_waypoints(waypoints: List[Waypoint]) -> bytes:
    return wrap(DataType.WAYPOINTS, build_waypoints_message(waypoints))


def decode_envelope(raw: bytes) -> WireEnvelope:
    envelope = SocketData()
    try:
        envelope.ParseFromString(raw)
    except DecodeError as e:
        raise WireError(f"Malformed envelope: {e}") from e
    return WireEnvelope(type_tag=envelope.data_type, payload=envelope.data)


def decode_payload(envelope: WireEnvelope) -> Message:
    """Parse the payload of an envelope into its typed message."""
    try:
        message_cls = _PAYLOAD_CLASSES[DataType(envelope.type_tag)]
    except ValueError:
        raise WireError(f"Unknown data type tag: {envelope.type_tag}") from None
    message = message_cls()
    try:
        message.ParseFromString(envelope.payload)
    except DecodeError as e:
        raise WireError(f"Malformed {message_cls.DESCRIPTOR.name} payload: {e}") from e
    return message
