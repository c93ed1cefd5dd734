from __future__ import annotations

import time
from typing import Any, Mapping, Protocol, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from mint.events import EventLog
from mint.tags import Filter, tag_specification, to_tag_list

INVALID_INSTANCE_TYPE_CODE = "InvalidInstanceType"
INSTANCE_NOT_FOUND_CODE = "InvalidInstanceID.NotFound"
VOLUME_NOT_FOUND_CODE = "InvalidVolume.NotFound"


class AwsError(RuntimeError):
    """Raised when an AWS API call fails; keeps the provider's error code and text."""

    def __init__(self, message: str, *, code: str = "", operation: str = "") -> None:
        super().__init__(message)
        self.code = code
        self.operation = operation


# Narrow capabilities, one per API verb. Orchestrators compose only the
# verbs they call, so tests can pass small fakes instead of a boto3 client.


class DescribeInstancesApi(Protocol):
    def describe_instances(
        self, *, filters: Sequence[Filter] = (), instance_ids: Sequence[str] = ()
    ) -> list[dict[str, Any]]: ...


class RunInstancesApi(Protocol):
    def run_instance(self, params: Mapping[str, Any]) -> dict[str, Any]: ...


class StartInstancesApi(Protocol):
    def start_instance(self, instance_id: str) -> None: ...


class StopInstancesApi(Protocol):
    def stop_instance(self, instance_id: str) -> None: ...


class TerminateInstancesApi(Protocol):
    def terminate_instance(self, instance_id: str) -> None: ...


class ModifyInstanceTypeApi(Protocol):
    def modify_instance_type(self, instance_id: str, instance_type: str) -> None: ...


class DescribeInstanceTypesApi(Protocol):
    def describe_instance_types(self, instance_type: str) -> list[dict[str, Any]]: ...


class CreateVolumeApi(Protocol):
    def create_volume(self, params: Mapping[str, Any]) -> dict[str, Any]: ...


class AttachVolumeApi(Protocol):
    def attach_volume(self, volume_id: str, instance_id: str, device: str) -> None: ...


class DetachVolumeApi(Protocol):
    def detach_volume(self, volume_id: str, *, force: bool = False) -> None: ...


class DeleteVolumeApi(Protocol):
    def delete_volume(self, volume_id: str) -> None: ...


class DescribeVolumesApi(Protocol):
    def describe_volumes(
        self, *, filters: Sequence[Filter] = (), volume_ids: Sequence[str] = ()
    ) -> list[dict[str, Any]]: ...


class AllocateAddressApi(Protocol):
    def allocate_address(self, tags: Mapping[str, str]) -> dict[str, Any]: ...


class AssociateAddressApi(Protocol):
    def associate_address(self, allocation_id: str, instance_id: str) -> str: ...


class ReleaseAddressApi(Protocol):
    def release_address(self, allocation_id: str) -> None: ...


class DescribeAddressesApi(Protocol):
    def describe_addresses(self, *, filters: Sequence[Filter] = ()) -> list[dict[str, Any]]: ...


class CreateTagsApi(Protocol):
    def create_tags(self, resource_ids: Sequence[str], tags: Mapping[str, str]) -> None: ...


class DescribeSecurityGroupsApi(Protocol):
    def describe_security_groups(self, *, filters: Sequence[Filter] = ()) -> list[dict[str, Any]]: ...


class DescribeSubnetsApi(Protocol):
    def describe_subnets(self, *, filters: Sequence[Filter] = ()) -> list[dict[str, Any]]: ...


class GetParameterApi(Protocol):
    def get_parameter(self, name: str) -> str: ...


class GetCallerIdentityApi(Protocol):
    def get_caller_identity(self) -> dict[str, Any]: ...


def _client_error_details(exc: ClientError) -> tuple[str, str]:
    error = exc.response.get("Error", {}) if isinstance(exc.response, dict) else {}
    code = str(error.get("Code") or "")
    message = str(error.get("Message") or "") or str(exc)
    return code, message


def _client_error(service: str, operation: str, exc: ClientError) -> AwsError:
    code, message = _client_error_details(exc)
    text = f"{service} {operation}: {code}: {message}" if code else f"{service} {operation}: {message}"
    return AwsError(text, code=code, operation=operation)


class AwsClient:
    """boto3-backed implementation of every capability the orchestrators use."""

    def __init__(
        self,
        session: boto3.Session | None = None,
        *,
        region: str = "",
        events: EventLog | None = None,
    ) -> None:
        if session is None:
            session = boto3.Session(region_name=region or None)
        self._session = session
        self.region = region or session.region_name or ""
        self._events = events or EventLog(None)
        self.ec2 = session.client("ec2", region_name=self.region or None)
        self.ssm = session.client("ssm", region_name=self.region or None)
        self.sts = session.client("sts", region_name=self.region or None)

    def _call(self, client: Any, service: str, operation: str, **params: Any) -> dict[str, Any]:
        start = time.monotonic()
        try:
            response = getattr(client, operation)(**params)
        except ClientError as exc:
            error = _client_error(service, operation, exc)
            self._record(service, operation, start, error.code or "ClientError")
            raise error from exc
        except NoCredentialsError:
            self._record(service, operation, start, "NoCredentials")
            raise
        except BotoCoreError as exc:
            self._record(service, operation, start, type(exc).__name__)
            raise AwsError(f"{service} {operation}: {exc}", operation=operation) from exc
        self._record(service, operation, start, "")
        return response

    def _paginate(
        self, client: Any, service: str, operation: str, result_key: str, **params: Any
    ) -> list[dict[str, Any]]:
        start = time.monotonic()
        items: list[dict[str, Any]] = []
        try:
            for page in client.get_paginator(operation).paginate(**params):
                items.extend(page.get(result_key, []))
        except ClientError as exc:
            error = _client_error(service, operation, exc)
            self._record(service, operation, start, error.code or "ClientError")
            raise error from exc
        except NoCredentialsError:
            self._record(service, operation, start, "NoCredentials")
            raise
        except BotoCoreError as exc:
            self._record(service, operation, start, type(exc).__name__)
            raise AwsError(f"{service} {operation}: {exc}", operation=operation) from exc
        self._record(service, operation, start, "")
        return items

    def _record(self, service: str, operation: str, start: float, error_code: str) -> None:
        duration_ms = int((time.monotonic() - start) * 1000)
        self._events.api_call(service, operation, duration_ms=duration_ms, error_code=error_code)

    # Instances

    def describe_instances(
        self, *, filters: Sequence[Filter] = (), instance_ids: Sequence[str] = ()
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {}
        if filters:
            params["Filters"] = list(filters)
        if instance_ids:
            params["InstanceIds"] = list(instance_ids)
        reservations = self._paginate(self.ec2, "ec2", "describe_instances", "Reservations", **params)
        return [instance for reservation in reservations for instance in reservation.get("Instances", [])]

    def run_instance(self, params: Mapping[str, Any]) -> dict[str, Any]:
        response = self._call(self.ec2, "ec2", "run_instances", **dict(params))
        instances = response.get("Instances") or []
        if not instances:
            raise AwsError("ec2 run_instances: response contained no instances", operation="run_instances")
        return instances[0]

    def start_instance(self, instance_id: str) -> None:
        self._call(self.ec2, "ec2", "start_instances", InstanceIds=[instance_id])

    def stop_instance(self, instance_id: str) -> None:
        self._call(self.ec2, "ec2", "stop_instances", InstanceIds=[instance_id])

    def terminate_instance(self, instance_id: str) -> None:
        self._call(self.ec2, "ec2", "terminate_instances", InstanceIds=[instance_id])

    def modify_instance_type(self, instance_id: str, instance_type: str) -> None:
        self._call(
            self.ec2,
            "ec2",
            "modify_instance_attribute",
            InstanceId=instance_id,
            InstanceType={"Value": instance_type},
        )

    def describe_instance_types(self, instance_type: str) -> list[dict[str, Any]]:
        try:
            response = self._call(
                self.ec2, "ec2", "describe_instance_types", InstanceTypes=[instance_type]
            )
        except AwsError as exc:
            if exc.code == INVALID_INSTANCE_TYPE_CODE:
                return []
            raise
        return list(response.get("InstanceTypes") or [])

    # Volumes

    def create_volume(self, params: Mapping[str, Any]) -> dict[str, Any]:
        return self._call(self.ec2, "ec2", "create_volume", **dict(params))

    def attach_volume(self, volume_id: str, instance_id: str, device: str) -> None:
        self._call(
            self.ec2,
            "ec2",
            "attach_volume",
            VolumeId=volume_id,
            InstanceId=instance_id,
            Device=device,
        )

    def detach_volume(self, volume_id: str, *, force: bool = False) -> None:
        self._call(self.ec2, "ec2", "detach_volume", VolumeId=volume_id, Force=force)

    def delete_volume(self, volume_id: str) -> None:
        self._call(self.ec2, "ec2", "delete_volume", VolumeId=volume_id)

    def describe_volumes(
        self, *, filters: Sequence[Filter] = (), volume_ids: Sequence[str] = ()
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {}
        if filters:
            params["Filters"] = list(filters)
        if volume_ids:
            params["VolumeIds"] = list(volume_ids)
        return self._paginate(self.ec2, "ec2", "describe_volumes", "Volumes", **params)

    # Addresses

    def allocate_address(self, tags: Mapping[str, str]) -> dict[str, Any]:
        return self._call(
            self.ec2,
            "ec2",
            "allocate_address",
            Domain="vpc",
            TagSpecifications=[tag_specification("elastic-ip", tags)],
        )

    def associate_address(self, allocation_id: str, instance_id: str) -> str:
        response = self._call(
            self.ec2,
            "ec2",
            "associate_address",
            AllocationId=allocation_id,
            InstanceId=instance_id,
        )
        return str(response.get("AssociationId") or "")

    def release_address(self, allocation_id: str) -> None:
        self._call(self.ec2, "ec2", "release_address", AllocationId=allocation_id)

    def describe_addresses(self, *, filters: Sequence[Filter] = ()) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"Filters": list(filters)} if filters else {}
        response = self._call(self.ec2, "ec2", "describe_addresses", **params)
        return list(response.get("Addresses") or [])

    # Tags and networking

    def create_tags(self, resource_ids: Sequence[str], tags: Mapping[str, str]) -> None:
        self._call(
            self.ec2,
            "ec2",
            "create_tags",
            Resources=list(resource_ids),
            Tags=to_tag_list(tags),
        )

    def describe_security_groups(self, *, filters: Sequence[Filter] = ()) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"Filters": list(filters)} if filters else {}
        return self._paginate(self.ec2, "ec2", "describe_security_groups", "SecurityGroups", **params)

    def describe_subnets(self, *, filters: Sequence[Filter] = ()) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"Filters": list(filters)} if filters else {}
        return self._paginate(self.ec2, "ec2", "describe_subnets", "Subnets", **params)

    # SSM and STS

    def get_parameter(self, name: str) -> str:
        response = self._call(self.ssm, "ssm", "get_parameter", Name=name)
        value = (response.get("Parameter") or {}).get("Value")
        if not value:
            raise AwsError(f"ssm get_parameter: no value for {name}", operation="get_parameter")
        return str(value)

    def get_caller_identity(self) -> dict[str, Any]:
        return self._call(self.sts, "sts", "get_caller_identity")
