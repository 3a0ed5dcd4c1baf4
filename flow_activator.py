#!/usr/bin/env python3
"""
Salesforce Flow Activator

Activates the latest version of the given Flows in one or more Salesforce orgs.
Org discovery and credentials come from the Salesforce CLI (sfdx / sf), and the
activation itself goes through the Tooling API.

Requirements:
- Python 3.8+
- requests library
- Salesforce CLI authenticated against the target orgs
"""

import requests
import subprocess
import json
import os
import re
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

BANNER = r"""
  ___ _                  _       _   _           _
 | __| |_____ __ __     /_\  __| |_(_)_ ____ _| |_ ___ _ _
 | _|| / _ \ V  V /    / _ \/ _|  _| \ V / _` |  _/ _ \ '_|
 |_| |_\___/\_/\_/    /_/ \_\__|\__|_|\_/\__,_|\__\___/_|
"""

DEFAULT_CONFIG_FILE = "flow_activator_config.json"
CONFIG_ENV_VAR = "FLOW_ACTIVATOR_CONFIG"

DEFAULT_CONFIG = {
    'api_version': 'v59.0',
    'cli_executable': 'sfdx',
    'on_credential_failure': 'abort',
    'log_enabled': True,
    'log_dir': '.',
    'request_timeout': None,
}

CLI_COMMANDS = {
    'sfdx': {
        'list': ['sfdx', 'force:org:list', '--json'],
        'display': ['sfdx', 'force:org:display', '-u', '{alias}', '--json'],
    },
    'sf': {
        'list': ['sf', 'org', 'list', '--json'],
        'display': ['sf', 'org', 'display', '--target-org', '{alias}', '--json'],
    },
}


class FlowActivatorError(Exception):
    """Base class for errors that stop the whole run"""


class OrgDirectoryError(FlowActivatorError):
    pass


class CredentialError(FlowActivatorError):
    def __init__(self, alias: str, message: str):
        super().__init__(f"{alias}: {message}")
        self.alias = alias


@dataclass
class OrgRecord:
    alias: str
    connected_status: str
    username: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.alias or self.username or ''


@dataclass
class OrgCredential:
    access_token: str
    instance_url: str


@dataclass
class ActivationResult:
    ACTIVATED = 'activated'
    FLOW_NOT_FOUND = 'flow_not_found'
    DEFINITION_NOT_FOUND = 'definition_not_found'
    VERIFICATION_FAILED = 'verification_failed'
    REMOTE_ERROR = 'remote_error'

    status: str
    flow_api_name: str
    version_number: Optional[int] = None
    message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == self.ACTIVATED

    def describe(self) -> str:
        """Human readable status line for the console"""
        name = self.flow_api_name
        if self.status == self.ACTIVATED:
            return f"✅ Successfully activated flow '{name}' to version {self.version_number}."
        if self.status == self.FLOW_NOT_FOUND:
            return f"❌ Flow '{name}' not found."
        if self.status == self.DEFINITION_NOT_FOUND:
            return f"❌ FlowDefinition for '{name}' not found."
        if self.status == self.VERIFICATION_FAILED:
            return f"⚠️  Failed to verify activation of flow '{name}' to version {self.version_number}."
        return f"❌ Error activating flow '{name}': {self.message}"


def mask_sensitive_data(text: str) -> str:
    """Mask sensitive information in log messages"""
    # Bearer headers
    text = re.sub(r'Bearer\s+[^\s\'",}]+', 'Bearer ***MASKED***', text)

    # Access tokens in key/value form
    text = re.sub(r'(access_?token)["\']?\s*[:=]\s*["\']?[^\s\'",}]{20,}',
                  r'\1="***MASKED***"', text, flags=re.IGNORECASE)

    # Salesforce session ids (org id, '!', opaque part)
    text = re.sub(r'\b00D[A-Za-z0-9]{12,15}![A-Za-z0-9._]+', '***MASKED***', text)

    return text


def soql_literal(value: str) -> str:
    """Escape a value for use inside a single-quoted SOQL string literal"""
    return value.replace('\\', '\\\\').replace("'", "\\'")


def parse_flow_names(raw: str) -> List[str]:
    """Split semicolon separated flow API names, dropping blanks"""
    return [name.strip() for name in raw.split(';') if name.strip()]


def load_config_file(config_file: Optional[str] = None) -> Dict:
    """Load configuration from JSON file, falling back to defaults"""
    config = dict(DEFAULT_CONFIG)

    explicit = config_file or os.environ.get(CONFIG_ENV_VAR)
    path = explicit or DEFAULT_CONFIG_FILE
    if not explicit and not os.path.exists(path):
        return config

    try:
        with open(path, 'r') as f:
            loaded = json.load(f)

        if not isinstance(loaded, dict):
            raise ValueError("Top level must be a JSON object")

        unknown = sorted(set(loaded) - set(DEFAULT_CONFIG))
        if unknown:
            raise ValueError(f"Unknown field(s): {', '.join(unknown)}")

        if loaded.get('cli_executable', 'sfdx') not in CLI_COMMANDS:
            raise ValueError("cli_executable must be 'sfdx' or 'sf'")
        if loaded.get('on_credential_failure', 'abort') not in ('abort', 'skip'):
            raise ValueError("on_credential_failure must be 'abort' or 'skip'")
        timeout = loaded.get('request_timeout')
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
            raise ValueError("request_timeout must be a positive number or null")

        config.update(loaded)
        return config

    except FileNotFoundError:
        print(f"❌ Configuration file not found: {path}")
    except json.JSONDecodeError as e:
        print(f"❌ Invalid JSON in configuration file: {e}")
    except ValueError as e:
        print(f"❌ Configuration validation error: {e}")

    print("Falling back to default settings...")
    return dict(DEFAULT_CONFIG)


class ActivationLog:
    """Session log file with masked sensitive information"""

    def __init__(self, log_dir: str = '.', enabled: bool = True):
        self.log_dir = log_dir
        self.enabled = enabled
        self.log_file = None
        self.session_id = datetime.now().strftime("%Y%m%d_%H%M%S")

    def setup(self):
        if not self.enabled:
            return

        os.makedirs(self.log_dir, exist_ok=True)
        self.log_file = os.path.join(self.log_dir, f"flow_activator_{self.session_id}.log")

        with open(self.log_file, 'w') as f:
            f.write("=== Salesforce Flow Activator Log ===\n")
            f.write(f"Session ID: {self.session_id}\n")
            f.write(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
            f.write("=" * 50 + "\n\n")

        print(f"📝 Logging to: {self.log_file}")

    def __call__(self, message: str):
        if not self.log_file:
            return

        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        with open(self.log_file, 'a') as f:
            f.write(f"[{timestamp}] {mask_sensitive_data(message)}\n")


def _no_log(message: str):
    pass


class SalesforceCLI:
    """Reads org listings and session credentials from the Salesforce CLI"""

    def __init__(self, executable: str = 'sfdx', log: Callable[[str], None] = _no_log):
        if executable not in CLI_COMMANDS:
            raise ValueError(f"Unsupported Salesforce CLI: {executable}")
        self.executable = executable
        self.log = log

    def _run_json(self, args: List[str]) -> Dict:
        self.log(f"Running: {' '.join(args)}")
        completed = subprocess.run(args, capture_output=True, text=True, check=False)

        # The CLI reports its own failures as JSON on stdout, so try that first
        try:
            payload = json.loads(completed.stdout)
        except json.JSONDecodeError:
            if completed.returncode != 0:
                detail = (completed.stderr or completed.stdout).strip()
                raise subprocess.CalledProcessError(completed.returncode, args, completed.stdout, detail)
            raise

        if not isinstance(payload, dict):
            raise ValueError("CLI output is not a JSON object")

        if completed.returncode != 0 or payload.get('status', 0) != 0:
            detail = payload.get('message') or payload.get('name') or completed.stderr.strip()
            raise subprocess.CalledProcessError(completed.returncode or 1, args, completed.stdout, detail)

        if not isinstance(payload.get('result'), dict):
            raise ValueError("CLI output has no 'result' object")
        return payload['result']

    @staticmethod
    def _describe_failure(e: Exception) -> str:
        if isinstance(e, subprocess.CalledProcessError):
            return f"command exited with status {e.returncode}: {e.stderr}"
        if isinstance(e, FileNotFoundError):
            return f"Salesforce CLI executable not found ({e.filename})"
        if isinstance(e, json.JSONDecodeError):
            return f"unparsable CLI output: {e}"
        return str(e)

    def list_connected_orgs(self) -> List[OrgRecord]:
        """Return the non-scratch orgs whose connection status is Connected"""
        try:
            result = self._run_json(list(CLI_COMMANDS[self.executable]['list']))
        except (subprocess.CalledProcessError, OSError, ValueError) as e:
            message = self._describe_failure(e)
            self.log(f"Error retrieving orgs: {message}")
            raise OrgDirectoryError(message) from e

        entries = result.get('nonScratchOrgs') or []
        if not isinstance(entries, list) or not all(isinstance(entry, dict) for entry in entries):
            message = "unexpected org list shape"
            self.log(f"Error retrieving orgs: {message}")
            raise OrgDirectoryError(message)

        orgs = []
        for entry in entries:
            if entry.get('connectedStatus') != 'Connected':
                continue
            # Nothing to pass to org display without an alias or username
            if not (entry.get('alias') or entry.get('username')):
                self.log("Skipping connected org with neither alias nor username")
                continue
            orgs.append(OrgRecord(
                alias=entry.get('alias') or '',
                connected_status=entry['connectedStatus'],
                username=entry.get('username'),
            ))

        self.log(f"Found {len(orgs)} connected orgs")
        return orgs

    def resolve_credential(self, org_alias: str) -> OrgCredential:
        """Return the access token and instance URL of the org's current session"""
        args = [arg.format(alias=org_alias) for arg in CLI_COMMANDS[self.executable]['display']]
        try:
            result = self._run_json(args)
            access_token = result['accessToken']
            instance_url = result['instanceUrl']
            for key, value in (('accessToken', access_token), ('instanceUrl', instance_url)):
                if not value or not isinstance(value, str):
                    raise KeyError(key)
            instance_url = instance_url.rstrip('/')
        except KeyError as e:
            message = f"CLI output is missing {e}"
            self.log(f"Error retrieving org details for {org_alias}: {message}")
            raise CredentialError(org_alias, message) from e
        except (subprocess.CalledProcessError, OSError, ValueError) as e:
            message = self._describe_failure(e)
            self.log(f"Error retrieving org details for {org_alias}: {message}")
            raise CredentialError(org_alias, message) from e

        self.log(f"Resolved credentials for {org_alias} ({instance_url})")
        return OrgCredential(access_token=access_token, instance_url=instance_url)


class FlowActivator:
    """Activates the latest version of a Flow through the Tooling API"""

    def __init__(self, api_version: str = 'v59.0', timeout: Optional[float] = None,
                 log: Callable[[str], None] = _no_log):
        self.api_version = api_version
        self.timeout = timeout
        self.log = log

    def _query(self, soql_query: str, access_token: str, instance_url: str) -> List[Dict]:
        query_url = f"{instance_url}/services/data/{self.api_version}/tooling/query"
        params = {'q': soql_query}

        headers = {
            'Authorization': f'Bearer {access_token}',
            'Content-Type': 'application/json'
        }

        self.log(f"Query: {soql_query}")
        response = requests.get(query_url, params=params, headers=headers, timeout=self.timeout)
        response.raise_for_status()

        result = response.json()
        return result.get('records') or []

    def _patch_definition(self, definition_id: str, version_number: int, access_token: str, instance_url: str):
        patch_url = f"{instance_url}/services/data/{self.api_version}/tooling/sobjects/FlowDefinition/{definition_id}"
        metadata = {'Metadata': {'activeVersionNumber': version_number}}

        headers = {
            'Authorization': f'Bearer {access_token}',
            'Content-Type': 'application/json'
        }

        self.log(f"Patching FlowDefinition {definition_id} to activeVersionNumber {version_number}")
        response = requests.patch(patch_url, json=metadata, headers=headers, timeout=self.timeout)
        response.raise_for_status()

    def activate(self, flow_api_name: str, access_token: str, instance_url: str) -> ActivationResult:
        """Point the Flow's definition at its highest version number and verify it took"""
        instance_url = instance_url.rstrip('/')
        name = soql_literal(flow_api_name)

        try:
            records = self._query(
                f"SELECT Id, VersionNumber FROM Flow WHERE Definition.DeveloperName = '{name}' "
                f"ORDER BY VersionNumber DESC LIMIT 1",
                access_token, instance_url)
            if not records:
                self.log(f"Flow '{flow_api_name}' not found")
                return ActivationResult(ActivationResult.FLOW_NOT_FOUND, flow_api_name)

            latest_version_id = records[0]['Id']
            latest_version_number = records[0]['VersionNumber']

            records = self._query(
                f"SELECT Id FROM FlowDefinition WHERE DeveloperName = '{name}'",
                access_token, instance_url)
            if not records:
                self.log(f"FlowDefinition for '{flow_api_name}' not found")
                return ActivationResult(ActivationResult.DEFINITION_NOT_FOUND, flow_api_name)

            definition_id = records[0]['Id']

            self._patch_definition(definition_id, latest_version_number, access_token, instance_url)

            records = self._query(
                f"SELECT ActiveVersionId FROM FlowDefinition WHERE Id = '{soql_literal(definition_id)}'",
                access_token, instance_url)
            active_version_id = records[0].get('ActiveVersionId') if records else None

        except requests.exceptions.RequestException as e:
            message = str(e)
            if getattr(e, 'response', None) is not None:
                try:
                    message = f"{message} - {e.response.json()}"
                except ValueError:
                    message = f"{message} - {e.response.text}"
            self.log(f"Activation of '{flow_api_name}' failed: {message}")
            return ActivationResult(ActivationResult.REMOTE_ERROR, flow_api_name, message=message)
        except ValueError as e:
            self.log(f"Activation of '{flow_api_name}' failed: invalid response: {e}")
            return ActivationResult(ActivationResult.REMOTE_ERROR, flow_api_name,
                                    message=f"Invalid response from Salesforce: {e}")
        except (KeyError, TypeError, AttributeError) as e:
            self.log(f"Activation of '{flow_api_name}' failed: unexpected record shape: {e!r}")
            return ActivationResult(ActivationResult.REMOTE_ERROR, flow_api_name,
                                    message=f"Unexpected response from Salesforce: missing {e}")

        if active_version_id == latest_version_id:
            self.log(f"Activated '{flow_api_name}' version {latest_version_number}")
            return ActivationResult(ActivationResult.ACTIVATED, flow_api_name, latest_version_number)

        self.log(f"Verification failed for '{flow_api_name}': active version {active_version_id}, "
                 f"expected {latest_version_id}")
        return ActivationResult(ActivationResult.VERIFICATION_FAILED, flow_api_name, latest_version_number)


class OperationCancelled(Exception):
    pass


class FlowActivatorSession:
    """Interactive run: prompts, confirmation and the org x flow activation loop"""

    def __init__(self, config: Optional[Dict] = None, cli: Optional[SalesforceCLI] = None,
                 activator: Optional[FlowActivator] = None, log: Optional[ActivationLog] = None):
        self.config = dict(DEFAULT_CONFIG)
        self.config.update(config or {})
        self.log = log or ActivationLog(self.config['log_dir'], self.config['log_enabled'])
        self.cli = cli or SalesforceCLI(self.config['cli_executable'], log=self.log)
        self.activator = activator or FlowActivator(self.config['api_version'],
                                                    self.config['request_timeout'], log=self.log)

    @staticmethod
    def _ask(prompt: str) -> str:
        try:
            return input(prompt)
        except (EOFError, KeyboardInterrupt):
            print()
            raise OperationCancelled()

    def prompt_flow_names(self) -> List[str]:
        while True:
            raw = self._ask("🔍 Enter the flow API names separated by semi-colons: ")
            flow_names = parse_flow_names(raw)
            if flow_names:
                print(f"✅ Selected {len(flow_names)} Flow(s): {', '.join(flow_names)}")
                return flow_names
            print("❌ Please enter at least one flow name")

    def prompt_org_selection(self, orgs: List[OrgRecord]) -> List[str]:
        all_aliases = [org.display_name for org in orgs]
        shown = all_aliases

        while True:
            print("\n🔍 Select the orgs to activate flows in:")
            print("   Type to filter, enter numbers separated by commas to select, 'all' for every listed org")
            for i, alias in enumerate(shown, 1):
                print(f"   {i:3d}. {alias}")

            answer = self._ask("Selection: ").strip()
            if not answer:
                print("❌ You must select at least one org")
                continue

            if answer.lower() == 'all':
                return list(shown)

            tokens = [t for t in re.split(r'[,\s]+', answer) if t]
            if all(t.isdecimal() for t in tokens):
                indexes = [int(t) for t in tokens]
                invalid = [i for i in indexes if i < 1 or i > len(shown)]
                if invalid:
                    print(f"❌ Invalid selection: {', '.join(str(i) for i in invalid)}")
                    continue
                selected = []
                for i in indexes:
                    if shown[i - 1] not in selected:
                        selected.append(shown[i - 1])
                return selected

            matches = [alias for alias in all_aliases if answer.lower() in alias.lower()]
            if matches:
                shown = matches
            else:
                print(f"⚠️  No orgs match '{answer}'")
                shown = all_aliases

    def confirm(self, selected_orgs: List[str]) -> bool:
        answer = self._ask(f"✅ You have selected {len(selected_orgs)} orgs. Do you want to proceed? (Y/n): ")
        return answer.strip().lower() in ('', 'y', 'yes')

    def activate_in_org(self, org_alias: str, flow_names: List[str]) -> List[ActivationResult]:
        print(f"\n🚀 Activating flows in org: {org_alias}")
        credential = self.cli.resolve_credential(org_alias)

        results = []
        for flow_api_name in flow_names:
            result = self.activator.activate(flow_api_name, credential.access_token, credential.instance_url)
            print(result.describe())
            self.log(f"[{org_alias}] {result.describe()}")
            results.append(result)
        return results

    def run(self) -> int:
        """Run the interactive session and return the process exit code"""
        print(BANNER)
        self.log.setup()

        try:
            flow_names = self.prompt_flow_names()
            self.log(f"Flow names: {', '.join(flow_names)}")

            try:
                orgs = self.cli.list_connected_orgs()
            except OrgDirectoryError as e:
                print(f"❌ Error retrieving orgs: {e}")
                return 1

            if not orgs:
                print("❌ No connected orgs found. Authenticate an org with the Salesforce CLI first.")
                self.log("No connected orgs found")
                return 0

            selected_orgs = self.prompt_org_selection(orgs)
            self.log(f"Selected orgs: {', '.join(selected_orgs)}")

            if not self.confirm(selected_orgs):
                print("Operation cancelled.")
                self.log("Operation cancelled: user declined confirmation")
                return 0
        except OperationCancelled:
            print("Operation cancelled.")
            self.log("Operation cancelled at prompt")
            return 0

        activated = 0
        failed = 0
        skipped_orgs = []
        for org_alias in selected_orgs:
            try:
                results = self.activate_in_org(org_alias, flow_names)
            except CredentialError as e:
                print(f"❌ Error retrieving org details: {e}")
                if self.config['on_credential_failure'] != 'skip':
                    self.log(f"Aborting run after credential failure for {org_alias}")
                    return 1
                print(f"⏭️  Skipping org {org_alias}")
                skipped_orgs.append(org_alias)
                continue

            activated += sum(1 for r in results if r.succeeded)
            failed += sum(1 for r in results if not r.succeeded)

        print(f"\n📊 Summary: {activated} activated, {failed} failed")
        if skipped_orgs:
            print(f"⏭️  Skipped orgs: {', '.join(skipped_orgs)}")
        self.log(f"Run completed: {activated} activated, {failed} failed, {len(skipped_orgs)} orgs skipped")
        return 0


def main() -> int:
    config = load_config_file()
    return FlowActivatorSession(config).run()


if __name__ == "__main__":
    sys.exit(main())
