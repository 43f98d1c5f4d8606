#!/usr/bin/env python3
"""EBS CSI driver IAM role installer.

Verifies that an EKS cluster exposes an OIDC issuer, deploys the CloudFormation
stack holding the driver's IRSA role, waits for it to settle and prints the
resulting role details.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import sys
import tempfile
import time
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import boto3
import requests
import yaml
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError, NoRegionError, ProfileNotFound

SCRIPT_NAME = "install-ebs-csi-driver"
SCRIPT_VERSION = "1.2.0"

DEFAULT_STACK_PREFIX = "ebs-csi-driver-role"
TEMPLATE_FILENAME = "ebs-driver-role.yaml"
DEFAULT_TEMPLATE_URL = (
  "https://raw.githubusercontent.com/astuto-ai/onelens-installation-scripts/"
  f"release/v{SCRIPT_VERSION}-ebs-driver-installer/scripts/ebs-driver-installation/{TEMPLATE_FILENAME}"
)
MAX_TEMPLATE_BODY_BYTES = 51200
TEMPLATE_FETCH_TIMEOUT = 30

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

REGION_PATTERN = re.compile(r"^[a-z]{2}(-gov)?-[a-z]+-[0-9]$")
NULL_ISSUERS = {"", "null", "None"}
NO_UPDATES_MESSAGE = "No updates are to be performed"
CREDENTIAL_ERROR_CODES = {
  "AccessDenied",
  "ExpiredToken",
  "InvalidClientTokenId",
  "SignatureDoesNotMatch",
  "UnrecognizedClientException",
}

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

logger = logging.getLogger("ebs_csi_role_installer")


class Remediation(str, Enum):
  CONFIG_FIX = "config-fix"
  WAIT_AND_RETRY = "wait-and-retry"
  MANUAL_INSPECTION = "manual-inspection"


class ProvisionError(Exception):
  remediation = Remediation.CONFIG_FIX
  hint = ""

  def __init__(self, message: str, hint: Optional[str] = None) -> None:
    super().__init__(message)
    if hint is not None:
      self.hint = hint


class PreconditionError(ProvisionError):
  remediation = Remediation.CONFIG_FIX


class InputError(ProvisionError):
  remediation = Remediation.CONFIG_FIX


class ConflictError(ProvisionError):
  remediation = Remediation.WAIT_AND_RETRY


class BackendFailureState(ProvisionError):
  remediation = Remediation.MANUAL_INSPECTION


class TransientCommunicationError(ProvisionError):
  remediation = Remediation.WAIT_AND_RETRY


class CredentialsNotConfigured(PreconditionError):
  hint = "Run 'aws configure' or export AWS credentials, then try again."


class ClusterNotFound(PreconditionError):
  hint = "Verify the cluster name and region are correct."


class OIDCNotEnabled(PreconditionError):
  hint = "Associate an IAM OIDC identity provider with the cluster first."


class InvalidRequest(InputError):
  pass


class ConfigError(InputError):
  pass


class TemplateInvalid(InputError):
  hint = "Fix the CloudFormation template or point --template-url/--template-path at a valid one."


class TemplateFetchError(TransientCommunicationError):
  hint = "Check network access, or set CFT_TEMPLATE_URL/CFT_TEMPLATE_PATH to another template."


class BackendQueryError(TransientCommunicationError):
  hint = "Check AWS connectivity and permissions, then re-run."


class OutputQueryError(TransientCommunicationError):
  hint = "The stack is deployed; re-run to fetch its outputs."


class DeploymentTimeout(TransientCommunicationError):
  hint = "The stack operation is still running; re-run once it settles."


class StackBusy(ConflictError):
  hint = "Wait for the current stack operation to complete, then re-run."

  def __init__(self, stack_name: str, status: str) -> None:
    super().__init__(f"Stack '{stack_name}' is currently in progress with status: {status}")
    self.stack_name = stack_name
    self.status = status


class StackInFailedState(BackendFailureState):
  hint = "Inspect the stack in the CloudFormation console and remediate it manually before re-running."

  def __init__(self, stack_name: str, status: str) -> None:
    super().__init__(f"Stack '{stack_name}' exists but is in an unexpected state: {status}")
    self.stack_name = stack_name
    self.status = status


class SubmissionRejected(BackendFailureState):
  hint = "Review the CloudFormation error above and the stack events in the console."


class DeploymentFailed(BackendFailureState):
  hint = "Check the stack events in the AWS CloudFormation console for the root cause."

  def __init__(self, stack_name: str, status: str) -> None:
    super().__init__(f"CloudFormation stack '{stack_name}' deployment failed with status: {status}")
    self.stack_name = stack_name
    self.status = status


class StackStatus(str, Enum):
  ABSENT = "ABSENT"
  CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
  CREATE_COMPLETE = "CREATE_COMPLETE"
  CREATE_FAILED = "CREATE_FAILED"
  UPDATE_IN_PROGRESS = "UPDATE_IN_PROGRESS"
  UPDATE_COMPLETE = "UPDATE_COMPLETE"
  UPDATE_FAILED = "UPDATE_FAILED"
  ROLLBACK_COMPLETE = "ROLLBACK_COMPLETE"
  UPDATE_ROLLBACK_COMPLETE = "UPDATE_ROLLBACK_COMPLETE"
  DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
  UNKNOWN = "UNKNOWN"

  @classmethod
  def parse(cls, raw: Optional[str]) -> "StackStatus":
    try:
      return cls(raw)
    except ValueError:
      return cls.UNKNOWN


TERMINAL_SUCCESS = frozenset({StackStatus.CREATE_COMPLETE, StackStatus.UPDATE_COMPLETE})
TERMINAL_FAILURE = frozenset({
  StackStatus.CREATE_FAILED,
  StackStatus.UPDATE_FAILED,
  StackStatus.ROLLBACK_COMPLETE,
  StackStatus.UPDATE_ROLLBACK_COMPLETE,
})


@dataclass(frozen=True)
class StackSnapshot:
  status: StackStatus
  raw_status: str

  @property
  def in_progress(self) -> bool:
    return self.raw_status.endswith("_IN_PROGRESS")


ABSENT_SNAPSHOT = StackSnapshot(StackStatus.ABSENT, StackStatus.ABSENT.value)


class DeployAction(str, Enum):
  CREATE = "create"
  UPDATE = "update"


class OutcomeKind(str, Enum):
  SUBMITTED = "submitted"
  NO_CHANGE = "no-change"
  FAILED = "failed"


@dataclass(frozen=True)
class DeploymentOutcome:
  kind: OutcomeKind
  action: Optional[DeployAction] = None
  error: Optional[ProvisionError] = None

  @classmethod
  def submitted(cls, action: DeployAction) -> "DeploymentOutcome":
    return cls(OutcomeKind.SUBMITTED, action=action)

  @classmethod
  def no_change(cls) -> "DeploymentOutcome":
    return cls(OutcomeKind.NO_CHANGE, action=DeployAction.UPDATE)

  @classmethod
  def failed(cls, error: ProvisionError) -> "DeploymentOutcome":
    return cls(OutcomeKind.FAILED, error=error)

  @property
  def reason(self) -> Optional[str]:
    return str(self.error) if self.error is not None else None


@dataclass(frozen=True)
class ProvisionerConfig:
  template_url: str = DEFAULT_TEMPLATE_URL
  template_path: Optional[Path] = None
  debug: bool = False
  poll_interval: float = 5.0
  progress_every: int = 60
  timeout: Optional[float] = None
  stack_prefix: str = DEFAULT_STACK_PREFIX
  profile: Optional[str] = None

  @classmethod
  def from_sources(
    cls,
    config_file: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Dict[str, Any]] = None,
  ) -> "ProvisionerConfig":
    """Layer defaults, config file, environment and CLI overrides in that order."""
    config = cls()
    if config_file is not None:
      config = replace(config, **load_config_file(config_file))
    config = replace(config, **_environment_overrides(os.environ if env is None else env))
    if overrides:
      config = replace(config, **{key: value for key, value in overrides.items() if value is not None})
    try:
      config = replace(
        config,
        template_path=Path(config.template_path) if config.template_path is not None else None,
        poll_interval=float(config.poll_interval),
        progress_every=_as_int("progress_every", config.progress_every),
        timeout=float(config.timeout) if config.timeout is not None else None,
        debug=_as_bool("debug", config.debug),
      )
    except (TypeError, ValueError) as exc:
      raise ConfigError(f"Invalid installer setting: {exc}") from exc
    if config.poll_interval <= 0:
      raise ConfigError(f"poll_interval must be positive, got {config.poll_interval}")
    if config.progress_every < 1:
      raise ConfigError(f"progress_every must be at least 1, got {config.progress_every}")
    if config.timeout is not None and config.timeout <= 0:
      raise ConfigError(f"timeout must be positive when set, got {config.timeout}")
    return config


def _as_bool(name: str, value: Any) -> bool:
  if isinstance(value, bool):
    return value
  if isinstance(value, str) and value.lower() in ("true", "false"):
    return value.lower() == "true"
  raise ConfigError(f"{name} must be true or false, got {value!r}")


def _as_int(name: str, value: Any) -> int:
  if isinstance(value, bool):
    raise ConfigError(f"{name} must be a whole number, got {value!r}")
  if isinstance(value, int):
    return value
  if isinstance(value, float) and value.is_integer():
    return int(value)
  if isinstance(value, str) and value.strip().lstrip("-").isdigit():
    return int(value)
  raise ConfigError(f"{name} must be a whole number, got {value!r}")


def _environment_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
  values: Dict[str, Any] = {}
  if env.get("CFT_TEMPLATE_URL"):
    values["template_url"] = env["CFT_TEMPLATE_URL"]
  if env.get("CFT_TEMPLATE_PATH"):
    values["template_path"] = Path(env["CFT_TEMPLATE_PATH"])
  if env.get("DEBUG", "").lower() == "true":
    values["debug"] = True
  return values


def load_config_file(config_path: Path) -> Dict[str, Any]:
  try:
    with config_path.open("r", encoding="utf-8") as handle:
      loaded = yaml.safe_load(handle) or {}
  except OSError as exc:
    raise ConfigError(f"Config file {config_path} could not be read: {exc}") from exc
  except yaml.YAMLError as exc:
    raise ConfigError(f"Config file {config_path} is not valid YAML: {exc}") from exc

  if not isinstance(loaded, dict):
    raise ConfigError(f"Config file {config_path} must parse to a mapping.")

  known = {item.name for item in fields(ProvisionerConfig)}
  values: Dict[str, Any] = {}
  for key, value in loaded.items():
    name = str(key).replace("-", "_")
    if name not in known:
      raise ConfigError(f"Config file {config_path}: unknown setting '{key}'.")
    values[name] = value
  return values


def stack_name_for(cluster: str, region: str, prefix: str = DEFAULT_STACK_PREFIX) -> str:
  return f"{prefix}-{cluster}-{region}"


@dataclass(frozen=True)
class ProvisionRequest:
  cluster: str
  region: str
  template_ref: str
  oidc_issuer: str
  stack_prefix: str = DEFAULT_STACK_PREFIX

  def __post_init__(self) -> None:
    if not self.cluster:
      raise InvalidRequest("Cluster name is required")
    if not self.region:
      raise InvalidRequest("Region is required")

  @property
  def stack_name(self) -> str:
    return stack_name_for(self.cluster, self.region, self.stack_prefix)


@dataclass(frozen=True)
class Template:
  body: str
  reference: str


@dataclass
class ProvisionResult:
  request: ProvisionRequest
  outcome: DeploymentOutcome
  final_status: Optional[StackStatus]
  outputs: Dict[str, str] = field(default_factory=dict)

  @property
  def changed(self) -> bool:
    return self.outcome.kind is OutcomeKind.SUBMITTED


@dataclass
class AwsClients:
  cloudformation: Any
  eks: Any
  sts: Any


def create_clients(region: str, profile: Optional[str] = None) -> AwsClients:
  try:
    session = boto3.session.Session(profile_name=profile, region_name=region)
    return AwsClients(
      cloudformation=session.client("cloudformation"),
      eks=session.client("eks"),
      sts=session.client("sts"),
    )
  except ProfileNotFound as exc:
    raise ConfigError(
      f"AWS profile could not be loaded: {exc}",
      hint="Pass an existing --profile or drop it to use the default credential chain.",
    ) from exc
  except NoRegionError as exc:
    raise ConfigError(f"AWS region could not be resolved: {exc}") from exc
  except BotoCoreError as exc:
    raise BackendQueryError(f"Could not create AWS clients for region '{region}': {exc}") from exc


def _error_code(exc: ClientError) -> str:
  return exc.response.get("Error", {}).get("Code", "")


def _error_message(exc: ClientError) -> str:
  return exc.response.get("Error", {}).get("Message", "") or str(exc)


def _is_stack_missing(exc: ClientError) -> bool:
  return _error_code(exc) == "ValidationError" and "does not exist" in _error_message(exc)


def check_credentials(sts: Any) -> Dict[str, str]:
  try:
    identity = sts.get_caller_identity()
  except NoCredentialsError as exc:
    raise CredentialsNotConfigured(f"AWS credentials are not configured: {exc}") from exc
  except ClientError as exc:
    if _error_code(exc) in CREDENTIAL_ERROR_CODES:
      raise CredentialsNotConfigured(f"AWS credentials are invalid: {_error_message(exc)}") from exc
    raise BackendQueryError(f"AWS STS rejected the identity check: {_error_message(exc)}") from exc
  except BotoCoreError as exc:
    raise BackendQueryError(f"Could not reach AWS STS: {exc}") from exc
  logger.debug("Caller account=%s arn=%s", identity.get("Account"), identity.get("Arn"))
  return identity


def validate_inputs(cluster: str, region: str, prefix: str = DEFAULT_STACK_PREFIX) -> str:
  if not cluster:
    raise InvalidRequest("Cluster name is required")
  if not region:
    raise InvalidRequest("Region is required")
  if not REGION_PATTERN.match(region):
    logger.warning("Region format looks unusual: '%s'. Continuing anyway...", region)

  stack_name = stack_name_for(cluster, region, prefix)
  logger.info("Cluster: %s", cluster)
  logger.info("Region: %s", region)
  logger.info("Stack: %s", stack_name)
  return stack_name


def verify_cluster(eks: Any, cluster: str, region: str) -> str:
  """Return the cluster's OIDC issuer URL, failing if the cluster or issuer is missing."""
  logger.info("Verifying EKS cluster exists and has OIDC provider...")
  try:
    response = eks.describe_cluster(name=cluster)
  except ClientError as exc:
    if _error_code(exc) == "ResourceNotFoundException":
      raise ClusterNotFound(f"EKS cluster '{cluster}' not found in region '{region}'") from exc
    raise BackendQueryError(f"Failed to describe EKS cluster '{cluster}': {_error_message(exc)}") from exc
  except BotoCoreError as exc:
    raise BackendQueryError(f"Failed to describe EKS cluster '{cluster}': {exc}") from exc

  issuer = ((response.get("cluster") or {}).get("identity") or {}).get("oidc") or {}
  issuer_url = issuer.get("issuer")
  if issuer_url is None or str(issuer_url).strip() in NULL_ISSUERS:
    raise OIDCNotEnabled(f"EKS cluster '{cluster}' does not have OIDC identity provider enabled")

  logger.log(SUCCESS, "EKS cluster found and OIDC provider is enabled")
  logger.info("OIDC Issuer URL: %s", issuer_url)
  return str(issuer_url)


class TemplateProvider:
  def __init__(
    self,
    cloudformation: Any,
    config: ProvisionerConfig,
    http: Optional[requests.Session] = None,
    default_local_path: Optional[Path] = None,
  ) -> None:
    self._cfn = cloudformation
    self._config = config
    self._http = http or requests.Session()
    self._default_local = default_local_path or Path(__file__).resolve().parent / TEMPLATE_FILENAME

  def resolve(self, scratch_dir: Path) -> Template:
    template = self._load_local() or self._fetch_remote(scratch_dir)
    self._validate(template)
    logger.log(SUCCESS, "CloudFormation template ready and validated")
    return template

  def _load_local(self) -> Optional[Template]:
    candidate = self._config.template_path or self._default_local
    if self._config.template_path is not None and not candidate.is_file():
      raise TemplateFetchError(f"Template override '{candidate}' does not exist.")
    if not candidate.is_file():
      return None
    logger.info("Using local CloudFormation template...")
    logger.debug("Template path: %s", candidate)
    return Template(body=candidate.read_text(encoding="utf-8"), reference=str(candidate))

  def _fetch_remote(self, scratch_dir: Path) -> Template:
    url = self._config.template_url
    logger.info("Downloading CloudFormation template...")
    logger.debug("Template URL: %s", url)
    try:
      response = self._http.get(url, timeout=TEMPLATE_FETCH_TIMEOUT)
      response.raise_for_status()
    except requests.RequestException as exc:
      raise TemplateFetchError(f"Failed to download CloudFormation template from {url}: {exc}") from exc

    destination = scratch_dir / TEMPLATE_FILENAME
    destination.write_text(response.text, encoding="utf-8")
    logger.debug("Template saved to %s", destination)
    return Template(body=response.text, reference=url)

  def _validate(self, template: Template) -> None:
    size = len(template.body.encode("utf-8"))
    if size > MAX_TEMPLATE_BODY_BYTES:
      raise TemplateInvalid(
        f"Template is {size} bytes, larger than the {MAX_TEMPLATE_BODY_BYTES} byte TemplateBody limit."
      )
    try:
      self._cfn.validate_template(TemplateBody=template.body)
    except ClientError as exc:
      raise TemplateInvalid(f"CloudFormation template is not valid: {_error_message(exc)}") from exc
    except BotoCoreError as exc:
      raise BackendQueryError(f"Failed to validate CloudFormation template: {exc}") from exc


def describe_stack_status(cloudformation: Any, stack_name: str) -> StackSnapshot:
  try:
    response = cloudformation.describe_stacks(StackName=stack_name)
  except ClientError as exc:
    if _is_stack_missing(exc):
      return ABSENT_SNAPSHOT
    raise BackendQueryError(f"Failed to check status of stack '{stack_name}': {_error_message(exc)}") from exc
  except BotoCoreError as exc:
    raise BackendQueryError(f"Failed to check status of stack '{stack_name}': {exc}") from exc

  stacks = response.get("Stacks") or []
  if not stacks:
    return ABSENT_SNAPSHOT
  raw = str(stacks[0].get("StackStatus", ""))
  return StackSnapshot(StackStatus.parse(raw), raw)


class StackDeployer:
  def __init__(self, cloudformation: Any, config: ProvisionerConfig) -> None:
    self._cfn = cloudformation
    self._config = config

  def deploy(self, request: ProvisionRequest, template_body: str) -> DeploymentOutcome:
    stack_name = request.stack_name
    logger.info("Deploying CloudFormation stack '%s'...", stack_name)

    snapshot = describe_stack_status(self._cfn, stack_name)
    if snapshot.status is StackStatus.ABSENT:
      action = DeployAction.CREATE
    elif snapshot.status in TERMINAL_SUCCESS:
      logger.warning("Stack '%s' already exists with status: %s", stack_name, snapshot.raw_status)
      logger.warning("Updating existing stack...")
      action = DeployAction.UPDATE
    elif snapshot.in_progress:
      return DeploymentOutcome.failed(StackBusy(stack_name, snapshot.raw_status))
    else:
      return DeploymentOutcome.failed(StackInFailedState(stack_name, snapshot.raw_status))

    submit = self._cfn.create_stack if action is DeployAction.CREATE else self._cfn.update_stack
    try:
      submit(**self._stack_arguments(request, template_body))
    except ClientError as exc:
      message = _error_message(exc)
      if action is DeployAction.UPDATE and _error_code(exc) == "ValidationError" and NO_UPDATES_MESSAGE in message:
        logger.info("No changes detected - stack is already up to date")
        logger.log(SUCCESS, "CloudFormation stack is current")
        return DeploymentOutcome.no_change()
      return DeploymentOutcome.failed(SubmissionRejected(f"CloudFormation deployment failed: {message}"))
    except BotoCoreError as exc:
      return DeploymentOutcome.failed(BackendQueryError(f"CloudFormation {action.value} request failed: {exc}"))

    logger.log(SUCCESS, "CloudFormation stack %s initiated", "creation" if action is DeployAction.CREATE else "update")
    return DeploymentOutcome.submitted(action)

  def _stack_arguments(self, request: ProvisionRequest, template_body: str) -> Dict[str, Any]:
    return {
      "StackName": request.stack_name,
      "TemplateBody": template_body,
      "Parameters": [
        {"ParameterKey": "ClusterName", "ParameterValue": request.cluster},
        {"ParameterKey": "OIDCIssuerURL", "ParameterValue": request.oidc_issuer},
      ],
      "Capabilities": ["CAPABILITY_NAMED_IAM"],
      "Tags": [
        {"Key": "CreatedBy", "Value": SCRIPT_NAME},
        {"Key": "Version", "Value": SCRIPT_VERSION},
        {"Key": "EKSCluster", "Value": request.cluster},
      ],
    }


class StackPoller:
  def __init__(
    self,
    cloudformation: Any,
    config: ProvisionerConfig,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
  ) -> None:
    self._cfn = cloudformation
    self._config = config
    self._sleep = sleep
    self._clock = clock

  def wait(self, stack_name: str) -> StackStatus:
    """Block until the stack reaches a terminal state.

    Returns the terminal success status, raises DeploymentFailed on a terminal
    failure. Without a configured timeout this waits indefinitely.
    """
    logger.info("Waiting for CloudFormation stack deployment to complete...")
    started = self._clock()
    last_status: Optional[str] = None
    ticks = 0

    while True:
      snapshot = describe_stack_status(self._cfn, stack_name)

      if snapshot.raw_status != last_status:
        logger.info("Stack status: %s", snapshot.raw_status)
        if snapshot.status is StackStatus.UNKNOWN:
          logger.warning("Unexpected stack status: %s", snapshot.raw_status)
        last_status = snapshot.raw_status
        ticks = 0

      if snapshot.status in TERMINAL_SUCCESS:
        logger.log(SUCCESS, "CloudFormation stack deployment completed successfully!")
        return snapshot.status
      if snapshot.status in TERMINAL_FAILURE or snapshot.status is StackStatus.ABSENT:
        raise DeploymentFailed(stack_name, snapshot.raw_status)

      ticks += 1
      elapsed = self._clock() - started
      if ticks % self._config.progress_every == 0:
        logger.info("Still waiting... (%ds elapsed)", elapsed)
      else:
        logger.debug("Stack %s still %s", stack_name, snapshot.raw_status)
      if self._config.timeout is not None and elapsed >= self._config.timeout:
        raise DeploymentTimeout(
          f"Stack '{stack_name}' did not settle within {self._config.timeout:g}s (last status: {snapshot.raw_status})"
        )

      self._sleep(self._config.poll_interval)


def fetch_stack_outputs(cloudformation: Any, stack_name: str) -> Dict[str, str]:
  logger.info("Retrieving stack outputs...")
  try:
    response = cloudformation.describe_stacks(StackName=stack_name)
  except ClientError as exc:
    raise OutputQueryError(f"Failed to retrieve outputs of stack '{stack_name}': {_error_message(exc)}") from exc
  except BotoCoreError as exc:
    raise OutputQueryError(f"Failed to retrieve outputs of stack '{stack_name}': {exc}") from exc

  stacks = response.get("Stacks") or []
  if not stacks:
    raise OutputQueryError(f"Stack '{stack_name}' was not returned when reading outputs.")

  outputs: Dict[str, str] = {}
  for row in stacks[0].get("Outputs") or []:
    outputs[row["OutputKey"]] = str(row.get("OutputValue", ""))
  if not outputs:
    logger.warning("No outputs found for stack")
  return outputs


def provision(
  cluster: str,
  region: str,
  *,
  config: ProvisionerConfig,
  clients: AwsClients,
  scratch_dir: Path,
  http: Optional[requests.Session] = None,
  sleep: Callable[[float], None] = time.sleep,
) -> ProvisionResult:
  check_credentials(clients.sts)
  validate_inputs(cluster, region, config.stack_prefix)
  issuer_url = verify_cluster(clients.eks, cluster, region)

  template = TemplateProvider(clients.cloudformation, config, http=http).resolve(scratch_dir)
  request = ProvisionRequest(
    cluster=cluster,
    region=region,
    template_ref=template.reference,
    oidc_issuer=issuer_url,
    stack_prefix=config.stack_prefix,
  )

  outcome = StackDeployer(clients.cloudformation, config).deploy(request, template.body)
  if outcome.error is not None:
    raise outcome.error

  final_status: Optional[StackStatus] = None
  if outcome.kind is OutcomeKind.SUBMITTED:
    final_status = StackPoller(clients.cloudformation, config, sleep=sleep).wait(request.stack_name)

  outputs = fetch_stack_outputs(clients.cloudformation, request.stack_name)
  return ProvisionResult(request=request, outcome=outcome, final_status=final_status, outputs=outputs)


BANNER_WIDTH = 78
ANSI_STYLES = {"heading": "\033[1m", "label": "\033[36m", "value": "\033[32m", "reset": "\033[0m"}


class ColorMode(str, Enum):
  AUTO = "auto"
  ALWAYS = "always"
  NEVER = "never"


class OutputFormat(str, Enum):
  TEXT = "text"
  JSON = "json"
  YAML = "yaml"


def color_enabled(mode: str, stream: Any = None) -> bool:
  if mode == ColorMode.ALWAYS.value:
    return True
  if mode == ColorMode.NEVER.value:
    return False
  stream = sys.stdout if stream is None else stream
  return stream.isatty() and "NO_COLOR" not in os.environ


def _banner(title: str) -> List[str]:
  return [
    "╔" + "═" * BANNER_WIDTH + "╗",
    "║" + title.center(BANNER_WIDTH) + "║",
    "╚" + "═" * BANNER_WIDTH + "╝",
  ]


def render_outputs(
  result: ProvisionResult,
  output_format: str = OutputFormat.TEXT.value,
  color: bool = False,
) -> str:
  if output_format == OutputFormat.JSON.value:
    return json.dumps(result.outputs, indent=2)
  if output_format == OutputFormat.YAML.value:
    return yaml.safe_dump(result.outputs, sort_keys=False, default_flow_style=False).rstrip("\n")

  style = ANSI_STYLES if color else dict.fromkeys(ANSI_STYLES, "")
  heading, label, value, reset = style["heading"], style["label"], style["value"], style["reset"]

  request = result.request
  role_name = result.outputs.get("RoleName")
  role_arn = result.outputs.get("RoleArn")
  title = "DEPLOYMENT RESULTS" if result.changed else "EXISTING STACK RESULTS"

  lines = [f"{heading}{line}{reset}" for line in _banner(title)]
  lines.append("")
  if role_name:
    lines.append(f"{label}IAM Role Name:{reset} {value}{role_name}{reset}")
  if role_arn:
    lines.append(f"{label}IAM Role ARN: {reset} {value}{role_arn}{reset}")
  for key, output_value in result.outputs.items():
    if key not in ("RoleName", "RoleArn"):
      lines.append(f"{label}{key}:{reset} {output_value}")
  if not result.outputs:
    lines.append("(stack has no outputs)")

  lines.extend([
    "",
    f"{heading}Next Steps:{reset}",
    "1. Install the EBS CSI driver add-on in your EKS cluster",
    "2. Use the IAM role ARN above when configuring the EBS CSI driver",
  ])
  if role_arn:
    lines.extend([
      "",
      f"{heading}Useful Commands:{reset}",
      "# Install EBS CSI driver add-on (using AWS CLI):",
      "aws eks create-addon \\",
      f"  --cluster-name {request.cluster} \\",
      "  --addon-name aws-ebs-csi-driver \\",
      f"  --service-account-role-arn {role_arn} \\",
      f"  --region {request.region}",
    ])
  return "\n".join(lines)


class _ConsoleFormatter(logging.Formatter):
  def format(self, record: logging.LogRecord) -> str:
    record.levelprefix = f"[{record.levelname}]".ljust(9)
    return super().format(record)


def configure_logging(debug: bool = False) -> None:
  handler = logging.StreamHandler(sys.stderr)
  handler.setFormatter(_ConsoleFormatter("%(levelprefix)s [%(asctime)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
  logger.handlers.clear()
  logger.addHandler(handler)
  logger.setLevel(logging.DEBUG if debug else logging.INFO)
  logger.propagate = False


def _raise_interrupt(signum: int, frame: Any) -> None:
  raise KeyboardInterrupt()


def report_failure(exc: ProvisionError) -> None:
  logger.error("%s", exc)
  if exc.hint:
    logger.error("%s", exc.hint)
  logger.info("Remediation: %s", exc.remediation.value)
  logger.info("For troubleshooting help, check:")
  logger.info("- AWS CloudFormation console for stack events")
  logger.info("- AWS CloudTrail for API call details")
  logger.info("- EKS cluster OIDC provider configuration")


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
  parser = argparse.ArgumentParser(
    prog=SCRIPT_NAME,
    description="Create the IAM role for the Amazon EBS CSI driver with an OIDC trust relationship.",
  )
  parser.add_argument("cluster", help="Name of your EKS cluster.")
  parser.add_argument("region", help="AWS region where the EKS cluster is located.")
  parser.add_argument("--profile", default=None, help="AWS shared config/credentials profile name.")
  parser.add_argument("--config", type=Path, default=None, help="Optional YAML file with installer settings.")
  parser.add_argument("--template-url", default=None, help="Override the CloudFormation template URL.")
  parser.add_argument("--template-path", type=Path, default=None, help="Use a local CloudFormation template.")
  parser.add_argument(
    "--poll-interval",
    type=float,
    default=None,
    help="Seconds between stack status checks (default: 5).",
  )
  parser.add_argument(
    "--timeout",
    type=float,
    default=None,
    help="Give up waiting after this many seconds (default: wait indefinitely).",
  )
  parser.add_argument(
    "--output",
    "-o",
    choices=[fmt.value for fmt in OutputFormat],
    default=OutputFormat.TEXT.value,
    help="Format used to print the stack outputs (default: text).",
  )
  parser.add_argument(
    "--color",
    choices=[mode.value for mode in ColorMode],
    default=ColorMode.AUTO.value,
    help="Color output mode: auto (default), always, or never.",
  )
  parser.add_argument("--debug", action="store_true", default=None, help="Enable debug logging.")
  parser.add_argument("--version", action="version", version=f"%(prog)s {SCRIPT_VERSION}")
  return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None, clients: Optional[AwsClients] = None) -> int:
  args = parse_arguments(argv)
  configure_logging(bool(args.debug) or os.environ.get("DEBUG", "").lower() == "true")
  previous_sigterm = signal.signal(signal.SIGTERM, _raise_interrupt)
  try:
    return _run(args, clients)
  finally:
    signal.signal(signal.SIGTERM, previous_sigterm)


def _run(args: argparse.Namespace, clients: Optional[AwsClients]) -> int:
  started = time.monotonic()
  try:
    config = ProvisionerConfig.from_sources(
      config_file=args.config,
      overrides={
        "template_url": args.template_url,
        "template_path": args.template_path,
        "poll_interval": args.poll_interval,
        "timeout": args.timeout,
        "debug": args.debug,
        "profile": args.profile,
      },
    )
    configure_logging(config.debug)
    logger.info("%s version %s", SCRIPT_NAME, SCRIPT_VERSION)

    with tempfile.TemporaryDirectory(prefix=f"{SCRIPT_NAME}-") as scratch:
      logger.debug("Created temporary directory: %s", scratch)
      if clients is None:
        clients = create_clients(args.region, config.profile)
      result = provision(args.cluster, args.region, config=config, clients=clients, scratch_dir=Path(scratch))
  except KeyboardInterrupt:
    logger.error("Script interrupted by user")
    return EXIT_INTERRUPTED
  except ProvisionError as exc:
    report_failure(exc)
    return EXIT_FAILURE
  except Exception as exc:  # pylint: disable=broad-except
    logger.error("Unhandled error: %s", exc, exc_info=logger.isEnabledFor(logging.DEBUG))
    return EXIT_FAILURE

  if result.changed:
    logger.log(SUCCESS, "IAM Role created successfully!")
  else:
    logger.log(SUCCESS, "IAM Role fetched from existing stack!")
  print(render_outputs(result, args.output, color=color_enabled(args.color)))
  logger.log(SUCCESS, "Script completed successfully in %ds", time.monotonic() - started)
  return EXIT_OK


if __name__ == "__main__":
  sys.exit(main())
