import re
from typing import Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest
import requests

import flow_activator
from flow_activator import ActivationResult, CredentialError, OrgCredential, OrgRecord


def make_response(payload=None, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    response.text = str(payload)
    if status_code >= 400:
        error = requests.exceptions.HTTPError(f"{status_code} Client Error", response=response)
        response.raise_for_status.side_effect = error
    else:
        response.raise_for_status.return_value = None
    return response


class FakeToolingAPI:
    """In-memory stand-in for the Tooling query and FlowDefinition patch endpoints"""

    def __init__(self):
        self.flows: Dict[Tuple[str, str], Dict] = {}
        self.patches: List[Tuple[str, Dict]] = []

    def add_flow(self, instance_url: str, name: str, versions: List[Tuple[str, int]],
                 definition_id: Optional[str] = None, honour_patch: bool = True):
        self.flows[(instance_url, name)] = {
            'versions': versions,
            'definition_id': definition_id or f"300{name}",
            'active_version_id': None,
            'honour_patch': honour_patch,
        }

    def _by_definition(self, instance_url, definition_id):
        for (url, _), flow in self.flows.items():
            if url == instance_url and flow['definition_id'] == definition_id:
                return flow
        return None

    def get(self, url, params=None, headers=None, timeout=None):
        instance_url = url.split('/services/')[0]
        q = params['q']

        m = re.search(r"FROM Flow WHERE Definition\.DeveloperName = '([^']*)'", q)
        if m:
            flow = self.flows.get((instance_url, m.group(1)))
            if not flow or not flow['versions']:
                return make_response({'totalSize': 0, 'records': []})
            version_id, number = max(flow['versions'], key=lambda v: v[1])
            return make_response({'records': [{'Id': version_id, 'VersionNumber': number}]})

        m = re.search(r"FROM FlowDefinition WHERE DeveloperName = '([^']*)'", q)
        if m:
            flow = self.flows.get((instance_url, m.group(1)))
            if not flow:
                return make_response({'records': []})
            return make_response({'records': [{'Id': flow['definition_id']}]})

        m = re.search(r"FROM FlowDefinition WHERE Id = '([^']*)'", q)
        if m:
            flow = self._by_definition(instance_url, m.group(1))
            return make_response({'records': [{'ActiveVersionId': flow['active_version_id']}]})

        return make_response([{'errorCode': 'MALFORMED_QUERY'}], status_code=400)

    def patch(self, url, json=None, headers=None, timeout=None):
        instance_url = url.split('/services/')[0]
        definition_id = url.rsplit('/', 1)[1]
        self.patches.append((url, json))

        flow = self._by_definition(instance_url, definition_id)
        if flow is None:
            return make_response([{'errorCode': 'NOT_FOUND'}], status_code=404)
        if flow['honour_patch']:
            number = json['Metadata']['activeVersionNumber']
            for version_id, version_number in flow['versions']:
                if version_number == number:
                    flow['active_version_id'] = version_id
        return make_response(None, status_code=204)


class FakeCLI:
    def __init__(self, aliases: List[str], failing=()):
        self.aliases = aliases
        self.failing = set(failing)
        self.resolved: List[str] = []
        self.listed = 0

    def list_connected_orgs(self):
        self.listed += 1
        return [OrgRecord(alias, 'Connected') for alias in self.aliases]

    def resolve_credential(self, org_alias):
        self.resolved.append(org_alias)
        if org_alias in self.failing:
            raise CredentialError(org_alias, "No authorization information found")
        return OrgCredential(access_token=f"token-{org_alias}",
                             instance_url=f"https://{org_alias.lower()}.my.salesforce.com")


class RecordingActivator:
    def __init__(self):
        self.calls: List[Tuple[str, str, str]] = []

    def activate(self, flow_api_name, access_token, instance_url):
        self.calls.append((flow_api_name, access_token, instance_url))
        return ActivationResult(ActivationResult.ACTIVATED, flow_api_name, 1)


@pytest.fixture
def tooling_api(monkeypatch):
    api = FakeToolingAPI()
    monkeypatch.setattr(flow_activator.requests, 'get', api.get)
    monkeypatch.setattr(flow_activator.requests, 'patch', api.patch)
    return api


@pytest.fixture
def answers(monkeypatch):
    """Feed scripted answers to input(); running out behaves like Ctrl-D"""
    queue: List[str] = []

    def fake_input(prompt=''):
        if not queue:
            raise EOFError()
        return queue.pop(0)

    monkeypatch.setattr('builtins.input', fake_input)
    return queue
