from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeVar

from mint.aws import (
    AllocateAddressApi,
    AssociateAddressApi,
    AttachVolumeApi,
    AwsError,
    CreateVolumeApi,
    DescribeAddressesApi,
    DescribeInstancesApi,
    DescribeSecurityGroupsApi,
    DescribeSubnetsApi,
    DescribeVolumesApi,
    GetParameterApi,
    RunInstancesApi,
    StartInstancesApi,
)
from mint.bootstrap import (
    OUTCOME_COMPLETE,
    OUTCOME_FAILED,
    BootstrapPoller,
    bootstrap_failed_message,
    failure_phase,
    load_user_data_template,
    render_user_data,
)
from mint.errors import PreconditionError, StepError
from mint.identity import OwnerContext
from mint.progress import ProgressWriter, quiet
from mint.tags import (
    BOOTSTRAP_COMPLETE,
    BOOTSTRAP_FAILED,
    BOOTSTRAP_PENDING,
    COMPONENT_ADMIN,
    COMPONENT_ELASTIC_IP,
    COMPONENT_INSTANCE,
    COMPONENT_PROJECT_VOLUME,
    COMPONENT_SECURITY_GROUP,
    TAG_COMPONENT,
    TAG_MINT,
    TAG_OWNER,
    TAG_PROJECT_VOLUME_GB,
    TAG_ROOT_VOLUME_GB,
    filter_by_component,
    filter_by_owner,
    resource_tags,
    tag_filter,
    tag_specification,
)
from mint.vm import STATE_PENDING, STATE_RUNNING, STATE_STOPPED, VM, find_vm
from mint.waiters import (
    DEFAULT_INSTANCE_WAIT,
    DEFAULT_VOLUME_WAIT,
    Clock,
    WaitCancelledError,
    WaitFailedError,
    WaitPolicy,
    WaitTimeoutError,
    wait_for_instance_state,
    wait_for_volume_available,
)

T = TypeVar("T")

DEFAULT_INSTANCE_TYPE = "m6i.xlarge"
DEFAULT_VOLUME_SIZE_GB = 50
DEFAULT_VOLUME_IOPS = 3000
DEFAULT_IDLE_TIMEOUT_MINUTES = 60
ROOT_VOLUME_GB = 200
ROOT_DEVICE = "/dev/sda1"
PROJECT_DEVICE = "/dev/xvdf"
INSTANCE_PROFILE = "mint-instance-profile"
UBUNTU_AMI_PARAMETER = "/aws/service/canonical/ubuntu/server/24.04/stable/current/amd64/hvm/ebs-gp2/ami-id"
ELASTIC_IP_QUOTA = 5

# Failures of any of these after the first mutation leave resources behind.
_STEP_FAILURES = (AwsError, WaitTimeoutError, WaitFailedError, WaitCancelledError)


@dataclass(frozen=True)
class ProvisionConfig:
    instance_type: str = DEFAULT_INSTANCE_TYPE
    volume_size_gb: int = DEFAULT_VOLUME_SIZE_GB
    volume_iops: int = DEFAULT_VOLUME_IOPS
    idle_timeout_minutes: int = DEFAULT_IDLE_TIMEOUT_MINUTES
    user_data_template: str = ""


@dataclass
class ProvisionResult:
    instance_id: str
    public_ip: str | None = None
    volume_id: str = ""
    allocation_id: str = ""
    restarted: bool = False
    already_running: bool = False
    bootstrap_status: str = BOOTSTRAP_PENDING
    bootstrap_error: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "instance_id": self.instance_id,
            "public_ip": self.public_ip,
            "volume_id": self.volume_id,
            "allocation_id": self.allocation_id,
            "restarted": self.restarted,
            "already_running": self.already_running,
            "bootstrap_status": self.bootstrap_status,
            "bootstrap_error": self.bootstrap_error,
        }


@dataclass(frozen=True)
class LaunchPlan:
    ami_id: str
    security_group_ids: tuple[str, str]
    subnet_id: str
    availability_zone: str


class ProvisionApi(
    DescribeInstancesApi,
    RunInstancesApi,
    StartInstancesApi,
    CreateVolumeApi,
    AttachVolumeApi,
    DescribeVolumesApi,
    AllocateAddressApi,
    AssociateAddressApi,
    DescribeAddressesApi,
    DescribeSecurityGroupsApi,
    DescribeSubnetsApi,
    GetParameterApi,
    Protocol,
):
    pass


class Provisioner:
    """Create a VM, resume a stopped one, or report one that is already running."""

    def __init__(
        self,
        api: ProvisionApi,
        *,
        poller: BootstrapPoller | None = None,
        wait_policy: WaitPolicy = DEFAULT_INSTANCE_WAIT,
        volume_wait_policy: WaitPolicy = DEFAULT_VOLUME_WAIT,
        clock: Clock | None = None,
        progress: ProgressWriter | None = None,
    ) -> None:
        self.api = api
        self.progress = progress or quiet()
        self.clock = clock
        self.poller = poller or BootstrapPoller(api, clock=clock, progress=self.progress)
        self.wait_policy = wait_policy
        self.volume_wait_policy = volume_wait_policy

    def run(
        self,
        ctx: OwnerContext,
        vm_name: str,
        config: ProvisionConfig,
        cancel: threading.Event | None = None,
    ) -> ProvisionResult:
        existing = find_vm(self.api, ctx.owner, vm_name)
        if existing is None:
            return self._provision_fresh(ctx, vm_name, config, cancel)
        if existing.state == STATE_STOPPED:
            return self._restart(ctx, existing, cancel)
        if existing.state in (STATE_RUNNING, STATE_PENDING):
            return self._report_running(existing)
        # start_instances rejects a stopping instance.
        raise PreconditionError(
            f"Error: VM '{vm_name}' ({existing.id}) is {existing.state}. "
            "Wait for it to settle, then retry."
        )

    # Fresh provision

    def _provision_fresh(
        self,
        ctx: OwnerContext,
        vm_name: str,
        config: ProvisionConfig,
        cancel: threading.Event | None,
    ) -> ProvisionResult:
        plan = self._resolve_launch_plan(ctx)
        template = config.user_data_template or load_user_data_template()
        user_data = render_user_data(
            template,
            vm_name=vm_name,
            project_device=PROJECT_DEVICE,
            idle_timeout_minutes=config.idle_timeout_minutes,
        )

        created: list[str] = []
        self.progress.line(f"Launching {config.instance_type} instance for VM '{vm_name}'...")
        instance = self._step(
            "launching instance",
            created,
            lambda: self.api.run_instance(self._instance_params(ctx, vm_name, config, plan, user_data)),
        )
        instance_id = str(instance.get("InstanceId") or "")
        created.append(instance_id)
        self.progress.detail(f"Launched {instance_id}")

        self.progress.line(f"Waiting for instance {instance_id} to be running...")
        running = self._step(
            f"waiting for instance {instance_id} to be running",
            created,
            lambda: wait_for_instance_state(
                self.api,
                instance_id,
                STATE_RUNNING,
                policy=self.wait_policy,
                clock=self.clock,
                cancel=cancel,
            ),
        )

        self.progress.line(f"Creating {config.volume_size_gb} GiB project volume...")
        volume = self._step(
            "creating project volume",
            created,
            lambda: self.api.create_volume(self._volume_params(ctx, vm_name, config, plan)),
        )
        volume_id = str(volume.get("VolumeId") or "")
        created.append(volume_id)
        self._step(
            f"waiting for volume {volume_id} to be available",
            created,
            lambda: wait_for_volume_available(
                self.api,
                volume_id,
                policy=self.volume_wait_policy,
                clock=self.clock,
                cancel=cancel,
            ),
        )
        self.progress.detail(f"Attaching {volume_id} to {instance_id} at {PROJECT_DEVICE}")
        self._step(
            f"attaching volume {volume_id} to {instance_id}",
            created,
            lambda: self.api.attach_volume(volume_id, instance_id, PROJECT_DEVICE),
        )

        self.progress.line("Allocating Elastic IP...")
        address = self._step(
            "allocating Elastic IP",
            created,
            lambda: self.api.allocate_address(
                resource_tags(ctx.owner, ctx.owner_arn, vm_name, component=COMPONENT_ELASTIC_IP)
            ),
        )
        allocation_id = str(address.get("AllocationId") or "")
        created.append(allocation_id)
        self._step(
            f"associating Elastic IP {allocation_id} with {instance_id}",
            created,
            lambda: self.api.associate_address(allocation_id, instance_id),
        )
        public_ip = address.get("PublicIp") or running.get("PublicIpAddress") or None

        self.progress.line(f"Instance {instance_id} is up at {public_ip}. Waiting for bootstrap...")
        result = ProvisionResult(
            instance_id=instance_id,
            public_ip=public_ip,
            volume_id=volume_id,
            allocation_id=allocation_id,
        )
        self._apply_bootstrap(result, ctx.owner, vm_name, cancel)
        return result

    def _resolve_launch_plan(self, ctx: OwnerContext) -> LaunchPlan:
        """Read-only pre-checks; any failure here happens before the first mutation."""
        try:
            ami_id = self.api.get_parameter(UBUNTU_AMI_PARAMETER)
        except AwsError as exc:
            raise PreconditionError(f"Error: Resolving machine image failed: {exc}") from exc

        self._check_address_quota(ctx.owner)

        user_group = self._find_security_group(
            filter_by_owner(ctx.owner) + [tag_filter(TAG_COMPONENT, COMPONENT_SECURITY_GROUP)],
            f"Error: No security group found with tags {TAG_OWNER}={ctx.owner}, "
            f"{TAG_COMPONENT}={COMPONENT_SECURITY_GROUP}. Create the owner's security group first.",
        )
        admin_group = self._find_security_group(
            [tag_filter(TAG_MINT, "true"), tag_filter(TAG_COMPONENT, COMPONENT_ADMIN)],
            "Error: No admin security group found. Deploy the admin stack first.",
        )

        try:
            subnets = self.api.describe_subnets(filters=[{"Name": "default-for-az", "Values": ["true"]}])
        except AwsError as exc:
            raise PreconditionError(f"Error: Describing subnets failed: {exc}") from exc
        if not subnets:
            raise PreconditionError("Error: No default subnets found. Mint requires a default VPC with subnets.")
        subnet = subnets[0]
        return LaunchPlan(
            ami_id=ami_id,
            security_group_ids=(user_group, admin_group),
            subnet_id=str(subnet.get("SubnetId") or ""),
            availability_zone=str(subnet.get("AvailabilityZone") or ""),
        )

    def _check_address_quota(self, owner: str) -> None:
        try:
            addresses = self.api.describe_addresses(filters=filter_by_owner(owner))
        except AwsError as exc:
            raise PreconditionError(f"Error: Checking Elastic IP quota failed: {exc}") from exc
        if len(addresses) >= ELASTIC_IP_QUOTA:
            raise PreconditionError(
                f"Error: Elastic IP quota exceeded: you have {len(addresses)} of {ELASTIC_IP_QUOTA} "
                "allowed Elastic IPs. Run 'mint destroy' on unused VMs to free allocations."
            )

    def _find_security_group(self, filters: list[dict[str, Any]], missing_message: str) -> str:
        try:
            groups = self.api.describe_security_groups(filters=filters)
        except AwsError as exc:
            raise PreconditionError(f"Error: Describing security groups failed: {exc}") from exc
        if not groups:
            raise PreconditionError(missing_message)
        return str(groups[0].get("GroupId") or "")

    def _instance_params(
        self,
        ctx: OwnerContext,
        vm_name: str,
        config: ProvisionConfig,
        plan: LaunchPlan,
        user_data: str,
    ) -> dict[str, Any]:
        tags = resource_tags(
            ctx.owner,
            ctx.owner_arn,
            vm_name,
            component=COMPONENT_INSTANCE,
            bootstrap=BOOTSTRAP_PENDING,
            extra={
                TAG_ROOT_VOLUME_GB: str(ROOT_VOLUME_GB),
                TAG_PROJECT_VOLUME_GB: str(config.volume_size_gb),
            },
        )
        # boto3 base64-encodes UserData for run_instances.
        return {
            "ImageId": plan.ami_id,
            "InstanceType": config.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "SubnetId": plan.subnet_id,
            "SecurityGroupIds": list(plan.security_group_ids),
            "UserData": user_data,
            "IamInstanceProfile": {"Name": INSTANCE_PROFILE},
            "BlockDeviceMappings": [
                {
                    "DeviceName": ROOT_DEVICE,
                    "Ebs": {"VolumeSize": ROOT_VOLUME_GB, "VolumeType": "gp3", "DeleteOnTermination": True},
                }
            ],
            "TagSpecifications": [tag_specification("instance", tags)],
        }

    def _volume_params(
        self,
        ctx: OwnerContext,
        vm_name: str,
        config: ProvisionConfig,
        plan: LaunchPlan,
    ) -> dict[str, Any]:
        tags = resource_tags(ctx.owner, ctx.owner_arn, vm_name, component=COMPONENT_PROJECT_VOLUME)
        return {
            "AvailabilityZone": plan.availability_zone,
            "Size": config.volume_size_gb,
            "VolumeType": "gp3",
            "Iops": config.volume_iops,
            "TagSpecifications": [tag_specification("volume", tags)],
        }

    # Existing VM

    def _restart(self, ctx: OwnerContext, existing: VM, cancel: threading.Event | None) -> ProvisionResult:
        self.progress.line(f"Starting stopped VM '{existing.name}' ({existing.id})...")
        self._step(f"starting stopped VM {existing.id}", [], lambda: self.api.start_instance(existing.id))
        running = self._step(
            f"waiting for instance {existing.id} to be running",
            [],
            lambda: wait_for_instance_state(
                self.api,
                existing.id,
                STATE_RUNNING,
                policy=self.wait_policy,
                clock=self.clock,
                cancel=cancel,
            ),
        )

        result = ProvisionResult(
            instance_id=existing.id,
            public_ip=running.get("PublicIpAddress") or existing.public_ip,
            restarted=True,
            bootstrap_status=existing.bootstrap_status,
        )
        address = self._find_vm_address(ctx.owner, existing.name)
        if address is not None:
            allocation_id = str(address.get("AllocationId") or "")
            self.progress.detail(f"Re-associating Elastic IP {allocation_id}")
            self._step(
                f"associating Elastic IP {allocation_id} with {existing.id}",
                [],
                lambda: self.api.associate_address(allocation_id, existing.id),
            )
            result.allocation_id = allocation_id
            result.public_ip = address.get("PublicIp") or result.public_ip

        if existing.bootstrap_status == BOOTSTRAP_FAILED:
            result.bootstrap_error = (
                f"VM '{existing.name}' has a previously failed bootstrap "
                f"({bootstrap_failed_message(existing.id, failure_phase(existing))}). "
                "Run 'mint destroy' and 'mint up' to rebuild."
            )
            return result
        self._apply_bootstrap(result, ctx.owner, existing.name, cancel)
        return result

    def _find_vm_address(self, owner: str, vm_name: str) -> dict[str, Any] | None:
        try:
            addresses = self.api.describe_addresses(
                filters=filter_by_component(owner, vm_name, COMPONENT_ELASTIC_IP)
            )
        except AwsError as exc:
            raise StepError(f"finding Elastic IP for VM '{vm_name}'", exc) from exc
        return addresses[0] if addresses else None

    def _report_running(self, existing: VM) -> ProvisionResult:
        result = ProvisionResult(
            instance_id=existing.id,
            public_ip=existing.public_ip,
            already_running=True,
            bootstrap_status=existing.bootstrap_status,
        )
        if existing.bootstrap_status == BOOTSTRAP_FAILED:
            result.bootstrap_error = (
                f"VM '{existing.name}' bootstrap failed. Run 'mint destroy' and 'mint up' to rebuild."
            )
        return result

    # Shared

    def _apply_bootstrap(
        self,
        result: ProvisionResult,
        owner: str,
        vm_name: str,
        cancel: threading.Event | None,
    ) -> None:
        outcome = self.poller.poll(owner, vm_name, result.instance_id, cancel)
        if outcome.status == OUTCOME_COMPLETE:
            result.bootstrap_status = BOOTSTRAP_COMPLETE
        elif outcome.status == OUTCOME_FAILED:
            result.bootstrap_status = BOOTSTRAP_FAILED
        else:
            result.bootstrap_status = BOOTSTRAP_PENDING
        result.bootstrap_error = outcome.error

    def _step(self, step: str, created: list[str], fn: Callable[[], T]) -> T:
        try:
            return fn()
        except _STEP_FAILURES as exc:
            raise StepError(step, exc, created) from exc
