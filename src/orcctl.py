#!/usr/bin/env python3
"""
CLI tool for the OpenStack resource controller
Provides kubectl-like interface for managing OpenStack resources
"""

import json
import time

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = "http://localhost:8000/api/v1"
DEFAULT_NAMESPACE = "default"


class OrcCLI:
    """CLI client for the resource controller API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, missing_ok=False, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            if missing_ok and response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except (ValueError, json.JSONDecodeError):
                    click.echo(f"Response: {e.response.text}", err=True)
            return None

    def object_path(self, namespace: str, kind: str, name: str = "") -> str:
        path = f"/namespaces/{namespace}/{kind}"
        return f"{path}/{name}" if name else path


def load_manifests(filename):
    """Read one or more object manifests from a YAML or JSON file"""
    with open(filename, "r") as f:
        if filename.endswith(".json"):
            data = json.load(f)
            return data if isinstance(data, list) else [data]
        return [doc for doc in yaml.safe_load_all(f) if doc]


def condition(obj, condition_type):
    for cond in obj.get("status", {}).get("conditions", []):
        if cond.get("type") == condition_type:
            return cond
    return {}


def summary_row(obj):
    available = condition(obj, "Available")
    progressing = condition(obj, "Progressing")
    return [
        obj["name"],
        obj.get("status", {}).get("id", ""),
        available.get("status", "Unknown"),
        progressing.get("reason", ""),
        obj["generation"],
        obj.get("status", {}).get("observedGeneration", ""),
        "yes" if obj.get("deletion_timestamp") else "",
    ]


SUMMARY_HEADERS = [
    "Name",
    "ID",
    "Available",
    "Reason",
    "Generation",
    "Observed",
    "Deleting",
]


@click.group()
@click.option(
    "--api-url",
    envvar="ORC_API_URL",
    default=API_BASE_URL,
    show_default=True,
    help="Base URL of the controller API",
)
@click.pass_context
def cli(ctx, api_url):
    """OpenStack resource controller CLI - kubectl-like interface"""
    ctx.obj = OrcCLI(api_url)


@cli.command()
@click.option(
    "--filename", "-f", type=click.Path(exists=True), required=True, help="Manifest"
)
@click.option("--namespace", "-n", default=None, help="Override manifest namespace")
@click.pass_obj
def apply(client, filename, namespace):
    """Create or update objects from a YAML/JSON manifest"""
    for manifest in load_manifests(filename):
        kind = manifest["kind"]
        name = manifest["name"]
        ns = namespace or manifest.get("namespace", DEFAULT_NAMESPACE)
        spec = manifest["spec"]

        path = client.object_path(ns, kind, name)
        existing = client._make_request("GET", path, missing_ok=True)
        if existing is None:
            result = client._make_request(
                "POST",
                client.object_path(ns, kind),
                json={"name": name, "spec": spec},
            )
            action = "created"
        else:
            result = client._make_request(
                "PUT", path, json={"spec": spec, "version": existing["version"]}
            )
            action = "configured"

        if result:
            click.echo(f"{kind}/{name} {action}")


@cli.command()
@click.argument("kind")
@click.option("--namespace", "-n", default=DEFAULT_NAMESPACE)
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.pass_obj
def get(client, kind, namespace, output):
    """List objects of a kind"""
    result = client._make_request("GET", client.object_path(namespace, kind))
    if result is None:
        return

    if output == "json":
        click.echo(json.dumps(result, indent=2))
    elif output == "yaml":
        click.echo(yaml.dump(result, default_flow_style=False))
    elif not result:
        click.echo(f"No {kind} objects found in namespace {namespace}")
    else:
        rows = [summary_row(obj) for obj in result]
        click.echo(tabulate(rows, headers=SUMMARY_HEADERS, tablefmt="grid"))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default=DEFAULT_NAMESPACE)
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, kind, name, namespace, output):
    """Describe a specific object"""
    result = client._make_request("GET", client.object_path(namespace, kind, name))

    if result:
        if output == "yaml":
            click.echo(yaml.dump(result, default_flow_style=False))
        else:
            click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default=DEFAULT_NAMESPACE)
@click.confirmation_option(prompt="Are you sure you want to delete this object?")
@click.pass_obj
def delete(client, kind, name, namespace):
    """Request deletion of an object (deletes the OpenStack resource)"""
    result = client._make_request(
        "DELETE", client.object_path(namespace, kind, name)
    )

    if result:
        click.echo(f"{kind}/{name} marked for deletion")
        if result.get("finalizers"):
            click.echo(f"Waiting on finalizers: {', '.join(result['finalizers'])}")


@cli.command()
@click.pass_obj
def kinds(client):
    """List the kinds managed by the controller"""
    result = client._make_request("GET", "/kinds")

    if result:
        rows = []
        for info in result:
            refs = [
                f"{r['index']} -> {r['target_kind']}"
                + ("" if r["guarded"] else " (import)")
                for r in info["relations"]
            ]
            rows.append([info["kind"], info["version"], "\n".join(refs)])
        click.echo(tabulate(rows, headers=["Kind", "Version", "References"]))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default=DEFAULT_NAMESPACE)
@click.option("--follow", "-f", is_flag=True, help="Follow status updates")
@click.option("--interval", "-i", default=5, help="Polling interval in seconds")
@click.pass_obj
def status(client, kind, name, namespace, follow, interval):
    """Show status of an object"""

    def show_status():
        result = client._make_request(
            "GET", client.object_path(namespace, kind, name)
        )
        if not result:
            return
        if follow:
            click.clear()
        obj_status = result.get("status", {})
        click.echo(f"{kind}: {result['name']}")
        click.echo(f"ID: {obj_status.get('id', 'N/A')}")
        click.echo(f"Generation: {result['generation']}")
        observed = obj_status.get("observedGeneration", "N/A")
        click.echo(f"Observed Generation: {observed}")
        for cond in obj_status.get("conditions", []):
            click.echo(
                f"{cond['type']}: {cond['status']} ({cond.get('reason', '')}) "
                f"{cond.get('message', '')}"
            )
        if result.get("deletion_timestamp"):
            click.echo(f"\nDeletion requested at {result['deletion_timestamp']}")

    show_status()

    if follow:
        try:
            while True:
                time.sleep(interval)
                show_status()
        except KeyboardInterrupt:
            click.echo("\nStopped following")


@cli.command()
@click.option("--kind", "-k", default=None, help="Only show events for this kind")
@click.option("--namespace", "-n", default=None)
@click.pass_obj
def events(client, kind, namespace):
    """Stream change events from the controller"""
    params = {k: v for k, v in (("kind", kind), ("namespace", namespace)) if v}
    try:
        with requests.get(
            f"{client.base_url}/events", params=params, stream=True
        ) as response:
            response.raise_for_status()
            for line in response.iter_lines(decode_unicode=True):
                if not line or not line.startswith("data: "):
                    continue
                event = json.loads(line[len("data: ") :])
                obj = event["object"]
                click.echo(
                    f"{event['revision']}\t{event['event_type']}\t"
                    f"{obj['kind']}/{obj['namespace']}/{obj['name']}"
                )
    except requests.exceptions.RequestException as e:
        click.echo(f"Error: {e}", err=True)
    except KeyboardInterrupt:
        click.echo("\nStopped following")


if __name__ == "__main__":
    cli()
