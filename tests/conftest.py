import logging
import signal
from collections import deque
from pathlib import Path

import pytest
import requests
from botocore.exceptions import ClientError

import ebs_csi_role_installer as installer

ACCOUNT_ID = "123456789012"
ISSUER = "https://oidc.eks.us-east-1.amazonaws.com/id/EXAMPLED539D4633E53DE1B71EXAMPLE"
TEMPLATE_BODY = "AWSTemplateFormatVersion: '2010-09-09'\nResources: {}\n"


def client_error(code, message, operation):
  return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def role_outputs(stack_name):
  return [
    {"OutputKey": "RoleName", "OutputValue": stack_name},
    {"OutputKey": "RoleArn", "OutputValue": f"arn:aws:iam::{ACCOUNT_ID}:role/{stack_name}"},
  ]


class FakeCloudFormation:
  """In-memory stand-in for the CloudFormation client.

  Each stack holds a queue of statuses; describe_stacks pops from the front
  until a single status is left, which then sticks.
  """

  def __init__(self):
    self.stacks = {}
    self.calls = []
    self.validation_error = None
    self.describe_error = None
    self.submit_error = None

  def seed(self, name, *statuses, outputs=None, template=TEMPLATE_BODY):
    self.stacks[name] = {
      "statuses": deque(statuses),
      "template": template,
      "outputs": role_outputs(name) if outputs is None else outputs,
    }

  def operations(self):
    return [name for name, _ in self.calls]

  def mutations(self):
    return [name for name in self.operations() if name in ("create_stack", "update_stack")]

  def describe_stacks(self, StackName):
    self.calls.append(("describe_stacks", {"StackName": StackName}))
    if self.describe_error is not None:
      raise self.describe_error
    stack = self.stacks.get(StackName)
    if stack is None:
      raise client_error("ValidationError", f"Stack with id {StackName} does not exist", "DescribeStacks")
    statuses = stack["statuses"]
    status = statuses.popleft() if len(statuses) > 1 else statuses[0]
    return {
      "Stacks": [{
        "StackName": StackName,
        "StackStatus": status,
        "Outputs": list(stack["outputs"]),
      }]
    }

  def validate_template(self, TemplateBody):
    self.calls.append(("validate_template", {"TemplateBody": TemplateBody}))
    if self.validation_error is not None:
      raise self.validation_error
    return {"Parameters": []}

  def create_stack(self, **kwargs):
    self.calls.append(("create_stack", kwargs))
    if self.submit_error is not None:
      raise self.submit_error
    name = kwargs["StackName"]
    self.seed(name, "CREATE_IN_PROGRESS", "CREATE_COMPLETE", template=kwargs["TemplateBody"])
    return {"StackId": f"arn:aws:cloudformation:us-east-1:{ACCOUNT_ID}:stack/{name}/1"}

  def update_stack(self, **kwargs):
    self.calls.append(("update_stack", kwargs))
    if self.submit_error is not None:
      raise self.submit_error
    name = kwargs["StackName"]
    stack = self.stacks[name]
    if stack["template"] == kwargs["TemplateBody"]:
      raise client_error("ValidationError", "No updates are to be performed.", "UpdateStack")
    stack["template"] = kwargs["TemplateBody"]
    stack["statuses"] = deque(["UPDATE_IN_PROGRESS", "UPDATE_COMPLETE"])
    return {"StackId": f"arn:aws:cloudformation:us-east-1:{ACCOUNT_ID}:stack/{name}/1"}


_NO_IDENTITY = object()


class FakeEks:
  def __init__(self):
    self.clusters = {}
    self.calls = []

  def add_cluster(self, name, issuer=ISSUER):
    self.clusters[name] = issuer

  def describe_cluster(self, name):
    self.calls.append(name)
    if name not in self.clusters:
      raise client_error("ResourceNotFoundException", f"No cluster found for name: {name}.", "DescribeCluster")
    issuer = self.clusters[name]
    cluster = {"name": name, "status": "ACTIVE"}
    if issuer is not _NO_IDENTITY:
      cluster["identity"] = {"oidc": {"issuer": issuer}}
    return {"cluster": cluster}


class FakeSts:
  def __init__(self):
    self.error = None

  def get_caller_identity(self):
    if self.error is not None:
      raise self.error
    return {"Account": ACCOUNT_ID, "Arn": f"arn:aws:iam::{ACCOUNT_ID}:user/operator", "UserId": "AIDEXAMPLE"}


class FakeResponse:
  def __init__(self, text, status_code=200):
    self.text = text
    self.status_code = status_code

  def raise_for_status(self):
    if self.status_code >= 400:
      raise requests.HTTPError(f"{self.status_code} Client Error")


class FakeHttp:
  def __init__(self, response=None, error=None):
    self.response = response
    self.error = error
    self.requested = []

  def get(self, url, timeout=None):
    self.requested.append((url, timeout))
    if self.error is not None:
      raise self.error
    return self.response


class FakeClock:
  def __init__(self):
    self.now = 0.0
    self.sleeps = []

  def __call__(self):
    return self.now

  def sleep(self, seconds):
    self.sleeps.append(seconds)
    self.now += seconds


@pytest.fixture(autouse=True)
def reset_logger_and_signals(monkeypatch):
  monkeypatch.delenv("DEBUG", raising=False)
  monkeypatch.delenv("CFT_TEMPLATE_URL", raising=False)
  monkeypatch.delenv("CFT_TEMPLATE_PATH", raising=False)
  previous = signal.getsignal(signal.SIGTERM)
  yield
  signal.signal(signal.SIGTERM, previous)
  installer.logger.handlers.clear()
  installer.logger.propagate = True
  installer.logger.setLevel(logging.NOTSET)


@pytest.fixture
def cfn():
  return FakeCloudFormation()


@pytest.fixture
def eks():
  fake = FakeEks()
  fake.add_cluster("prod-1")
  return fake


@pytest.fixture
def sts():
  return FakeSts()


@pytest.fixture
def clients(cfn, eks, sts):
  return installer.AwsClients(cloudformation=cfn, eks=eks, sts=sts)


@pytest.fixture
def template_file(tmp_path: Path) -> Path:
  path = tmp_path / "ebs-driver-role.yaml"
  path.write_text(TEMPLATE_BODY)
  return path


@pytest.fixture
def config(template_file):
  return installer.ProvisionerConfig(template_path=template_file)


@pytest.fixture
def clock():
  return FakeClock()
