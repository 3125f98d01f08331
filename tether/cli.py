"""Main CLI entrypoint for tether."""

import functools
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

import click

from . import pipeline
from .backup import BackupCoordinator, CoordinatorState
from .certs import CertificateProvisioner
from .config import Settings
from .errors import TetherError
from .events import get_status_from_events, read_events, tail_events
from .ids import is_valid_run_id
from .state import list_runs, read_report_json, run_exists
from .storage import ObjectStore


@click.group()
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.pass_context
def main(ctx, output_json, verbose):
    """tether - idempotent GKE deployment for Open WebUI."""
    ctx.ensure_object(dict)
    ctx.obj['json'] = output_json
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _json_output(data: Dict[str, Any]) -> None:
    """Output data as JSON."""
    print(json.dumps(data, indent=None, default=str))


def _human_output(message: str) -> None:
    """Output human-readable message."""
    if not click.get_current_context().obj.get('json', False):
        click.echo(message)


def settings_options(func):
    """Options shared by every command that talks to the cloud."""
    @click.option('--project', 'project_id', help='GCP project ID')
    @click.option('--region', help='GCP region')
    @click.option('--zone', help='GCP zone')
    @click.option('--cluster', 'cluster_name', help='GKE cluster name')
    @click.option('--bucket', 'backup_bucket', help='Backup bucket name')
    @click.option('--domain', help='Public domain of the application')
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        overrides = {name: kwargs.pop(name) for name in
                     ('project_id', 'region', 'zone', 'cluster_name', 'backup_bucket', 'domain')}
        try:
            kwargs['settings'] = Settings.from_env(**overrides)
        except ValueError as e:
            _fail(f"Invalid configuration: {e}")
        return func(*args, **kwargs)
    return wrapper


def _fail(message: str) -> None:
    if click.get_current_context().obj.get('json', False):
        _json_output({'error': message})
    else:
        click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _report(report: Dict[str, Any]) -> None:
    """Print a run report and exit 0 on success or warning, 1 on fatal."""
    if click.get_current_context().obj.get('json', False):
        _json_output(report)
    else:
        _human_output(f"🆔 Run ID: {report['run_id']}")
        for phase in report['phases']:
            marker = {'success': '✅', 'warning': '⚠️ ', 'fatal': '❌'}.get(phase['status'], '•')
            _human_output(f"{marker} {phase['phase']}: {phase['status']}")
            for action in phase['actions']:
                detail = f" ({action['detail']})" if action.get('detail') else ""
                _human_output(f"    {action['action']:>8} {action['resource']}{detail}")
            for warning in phase['warnings']:
                _human_output(f"    warning: {warning}")
            if phase.get('error'):
                _human_output(f"    error: {phase['error']}")
        _human_output(f"📊 Status: {report['status'].upper()}")

    sys.exit(1 if report['status'] == 'failed' else 0)


@main.command()
@settings_options
@click.option('--run-id', help='Optional run ID')
def deploy(settings, run_id):
    """Converge infrastructure and deploy the application."""
    _report(pipeline.deploy(settings, run_id=run_id))


@main.command()
@settings_options
@click.option('--run-id', help='Optional run ID')
def infra(settings, run_id):
    """Converge infrastructure only (APIs, static IP, cluster, node pool)."""
    _report(pipeline.deploy(settings, run_id=run_id, infrastructure_only=True))


@main.command()
@settings_options
@click.option('--preserve-ip/--no-preserve-ip', default=None, help='Keep the static ingress IP (default: keep)')
@click.option('--skip-backup', is_flag=True, help='Do not back up the database first')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@click.option('--run-id', help='Optional run ID')
def destroy(settings, preserve_ip, skip_backup, yes, run_id):
    """Back up the database, then tear down the cluster."""
    if preserve_ip is not None:
        settings = settings.model_copy(update={'preserve_ip': preserve_ip})
    if not yes:
        target = "cluster and static IP" if not settings.preserve_ip else "cluster (static IP preserved)"
        click.confirm(f"Destroy {target} in {settings.project_id}?", abort=True)
    _report(pipeline.destroy(settings, run_id=run_id, skip_backup=skip_backup))


@main.command()
@settings_options
@click.option('--run-id', help='Optional run ID')
def backup(settings, run_id):
    """Snapshot the application database to the backup bucket."""
    _report(pipeline.backup(settings, run_id=run_id))


@main.command()
@settings_options
@click.option('--target', type=click.Path(path_type=Path), help='Database path (default: DB_PATH)')
@click.option('--strict', is_flag=True, help='Exit non-zero when the restore fails')
def restore(settings, target, strict):
    """Restore the latest snapshot (runs in the pod's init container)."""
    target = target or Path(settings.db_path)
    coordinator = BackupCoordinator(
        ObjectStore(settings.backup_bucket, project=settings.project_id), target=settings.target,
    )
    outcome = coordinator.restore(target)

    result = {
        'state': outcome.state.value,
        'target': str(target),
        'key': outcome.snapshot.key if outcome.snapshot else None,
        'warning': outcome.warning,
    }
    if click.get_current_context().obj.get('json', False):
        _json_output(result)
    elif outcome.restored:
        click.echo(f"restored {outcome.snapshot.size} bytes from {outcome.snapshot.key} into {target}")
    else:
        click.echo(f"{outcome.state.value}: {outcome.warning}")

    if strict and outcome.state is CoordinatorState.RESTORE_FAILED:
        sys.exit(1)


@main.command()
@settings_options
@click.option('--apply', 'apply_secret', is_flag=True, help='Also create the cluster TLS secret if absent')
def cert(settings, apply_secret):
    """Resolve the TLS certificate for the domain (cache, local, or generated)."""
    try:
        settings.require('domain')
        env = pipeline.Environment(settings)
        if apply_secret:
            env.connect_cluster()
        provisioner: CertificateProvisioner = env.provisioner
        bundle = provisioner.ensure_certificate(settings.domain)
        created = None
        if apply_secret:
            created = provisioner.materialize(bundle, settings.namespace, settings.tls_secret)
    except TetherError as e:
        _fail(str(e))
        return

    result = {
        'domain': bundle.domain,
        'source': bundle.source,
        'expiry': bundle.expiry.isoformat() if bundle.expiry else None,
        'subject_alt_names': bundle.subject_alt_names,
        'secret_created': created,
        'warnings': provisioner.warnings,
    }
    if click.get_current_context().obj.get('json', False):
        _json_output(result)
    else:
        _human_output(f"🔒 {bundle.domain}: resolved from {bundle.source}")
        if bundle.expiry:
            _human_output(f"   expires {bundle.expiry:%Y-%m-%d}")
        if created is not None:
            _human_output(f"   secret {settings.namespace}/{settings.tls_secret}: "
                          f"{'created' if created else 'already present'}")
        for warning in provisioner.warnings:
            _human_output(f"   warning: {warning}")


@main.command(name='setup-bucket')
@settings_options
@click.option('--run-id', help='Optional run ID')
def setup_bucket(settings, run_id):
    """Create and configure the backup bucket."""
    _report(pipeline.setup_bucket(settings, run_id=run_id))


@main.command()
@click.argument('run_id')
def status(run_id):
    """Show a run's status."""
    if not is_valid_run_id(run_id):
        _fail(f"Invalid run ID: {run_id}")
    if not run_exists(run_id):
        _fail(f"Run {run_id} not found")

    current = get_status_from_events(run_id)
    report = read_report_json(run_id)

    if click.get_current_context().obj.get('json', False):
        _json_output({'run_id': run_id, 'status': current, 'report': report})
        return

    _human_output(f"🆔 Run ID: {run_id}")
    _human_output(f"📊 Status: {current.upper()}")
    if report:
        for phase in report.get('phases', []):
            _human_output(f"  • {phase['phase']}: {phase['status']}")

    events = read_events(run_id)
    if events:
        _human_output("\n📝 Recent Events (last 5):")
        for event in events[-5:]:
            _human_output(f"  • {event.get('ts', 'unknown')}: {event.get('type', 'unknown')}")
            message = event.get('data', {}).get('message') or event.get('data', {}).get('reason')
            if message:
                _human_output(f"    {message}")


@main.command()
def runs():
    """List recorded runs, newest first."""
    run_ids = list_runs()
    if click.get_current_context().obj.get('json', False):
        _json_output({'runs': [{'run_id': r, 'status': get_status_from_events(r)} for r in run_ids]})
        return
    if not run_ids:
        _human_output("No runs recorded")
        return
    for run_id in run_ids:
        _human_output(f"{run_id}  {get_status_from_events(run_id)}")


@main.command()
@click.argument('run_id')
@click.option('--follow', '-f', is_flag=True, help='Follow logs in real-time')
def logs(run_id, follow):
    """Show a run's event stream."""
    if not is_valid_run_id(run_id):
        _fail(f"Invalid run ID: {run_id}")

    output_json = click.get_current_context().obj.get('json', False)
    try:
        for event in tail_events(run_id, follow=follow):
            if output_json:
                print(json.dumps(event), flush=True)
            else:
                data = event.get('data', {})
                message = data.get('message') or data.get('reason') or data.get('phase') or ""
                click.echo(f"[{event.get('ts', 'unknown')}] {event.get('type', 'unknown')}: {message}")
    except KeyboardInterrupt:
        click.echo("\nLog streaming stopped", err=True)


if __name__ == '__main__':
    main()
