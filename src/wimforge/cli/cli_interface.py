"""
WimForge CLI Interface
Command-line interface for WimForge image customization
"""

import click
import sys
import threading
from pathlib import Path

from colorama import init, Fore, Style

from wimforge.core.config import Config
from wimforge.core.logger import build_log, setup_logging
from wimforge.core.models import FormatConflictPolicy, ImageFormat, ProgressDetail
from wimforge.core.pipeline import PipelineRequest, WimForgePipeline
from wimforge.utils.file_utils import format_size

init()


def _pipeline(ctx) -> WimForgePipeline:
    if 'pipeline' not in ctx.obj:
        ctx.obj['pipeline'] = WimForgePipeline.from_config(ctx.obj['config'])
    return ctx.obj['pipeline']


def _print_progress(detail: ProgressDetail):
    if detail.status_text:
        click.echo(f"{Fore.BLUE}▶ {detail.status_text}{Style.RESET_ALL}")
    if detail.percent is not None:
        click.echo(f"\r   {detail.percent:5.1f}%", nl=False)
    elif detail.terminal_output:
        click.echo(f"   {detail.terminal_output}")


def _succeed(message: str):
    click.echo(f"{Fore.GREEN}✅ {message}{Style.RESET_ALL}")


def _fail(message: str):
    click.echo(f"{Fore.RED}❌ {message}{Style.RESET_ALL}", err=True)
    sys.exit(1)


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--config', '-c', help='Configuration file path')
@click.pass_context
def cli(ctx, verbose, config):
    """WimForge - Windows installation media customization tool"""
    ctx.ensure_object(dict)
    app_config = Config(config)
    log_level = "DEBUG" if verbose else app_config.get('log_level', "INFO")
    ctx.obj['log_dir'] = setup_logging(app_config.get_log_dir(), level=log_level)
    ctx.obj['config'] = app_config

    click.echo(f"{Fore.CYAN}{Style.BRIGHT}WimForge v{app_config.get('version')}{Style.RESET_ALL}")
    if verbose:
        click.echo(f"{Fore.YELLOW}🔍 Verbose mode enabled{Style.RESET_ALL}")


@cli.command()
@click.option('--iso', '-i', 'iso_path', required=True, help='Source Windows ISO')
@click.option('--working-dir', '-w', help='Extracted ISO tree to customize')
@click.option('--output', '-o', required=True, help='Path of the ISO to create')
@click.option('--answer-file', '-a', help='autounattend.xml to embed')
@click.option('--drivers', '-d', 'driver_source', help='Folder of driver packages to embed')
@click.option('--system-drivers', is_flag=True, help='Export and embed the drivers of this machine')
@click.option('--keep-working-dir', is_flag=True, help='Do not delete the working directory afterwards')
@click.option('--on-conflict', type=click.Choice([p.value for p in FormatConflictPolicy]),
              help='What to do when install.wim and install.esd both exist')
@click.pass_context
def build(ctx, iso_path, working_dir, output, answer_file, driver_source, system_drivers,
          keep_working_dir, on_conflict):
    """Customize an extracted ISO tree and master a new bootable ISO"""
    config = ctx.obj['config']
    policy = FormatConflictPolicy(on_conflict) if on_conflict else config.get_format_policy()

    request = PipelineRequest(
        iso_path=iso_path,
        working_dir=working_dir or str(config.get_working_dir()),
        output_path=output,
        answer_file=answer_file,
        driver_source=driver_source,
        include_drivers=bool(driver_source) or system_drivers,
        keep_working_dir=keep_working_dir or config.get('keep_working_dir'),
        format_policy=policy,
        cancel_event=threading.Event(),
        progress=_print_progress,
    )

    click.echo(f"{Fore.BLUE}🛠  Building {output} from {request.working_dir}{Style.RESET_ALL}")
    with build_log(ctx.obj['log_dir'], Path(output).stem) as log_path:
        try:
            result = _pipeline(ctx).run(request)
        except KeyboardInterrupt:
            request.cancel_event.set()
            _fail("Build interrupted")

    click.echo()
    for stage in result.completed_stages:
        click.echo(f"   {Fore.GREEN}✓{Style.RESET_ALL} {stage.value}")
    if result.image_info is not None:
        info = result.image_info
        click.echo(f"   Image: {info.format.display_name}, {info.image_count} edition(s), "
                   f"{format_size(info.size_bytes)}")

    click.echo(f"   📄 Build log: {log_path}")

    if not result.success:
        _fail(f"[{result.failed_stage.value}] {result.message}")
    _succeed(result.message)


@cli.command()
@click.argument('working_dir')
@click.pass_context
def detect(ctx, working_dir):
    """Show which install image formats a working directory holds"""
    detection = _pipeline(ctx).detector.detect_all_image_formats(working_dir)

    if detection.neither_exists:
        _fail(f"No install.wim or install.esd found in {working_dir}")

    for info in (detection.wim_info, detection.esd_info):
        if info is None:
            continue
        click.echo(f"{Style.BRIGHT}{info.format.file_name}{Style.RESET_ALL}")
        click.echo(f"   💾 Size: {Fore.WHITE}{format_size(info.size_bytes)}{Style.RESET_ALL}")
        click.echo(f"   🗂️  Editions: {Fore.WHITE}{info.image_count}{Style.RESET_ALL}")
        for index, name in enumerate(info.edition_names, 1):
            click.echo(f"      {index}. {name}")

    if detection.both_exist:
        click.echo(f"{Fore.YELLOW}⚠️  Both formats are present; only one should exist{Style.RESET_ALL}")


@cli.command(name="inject-drivers")
@click.argument('working_dir')
@click.option('--source', '-s', help='Driver folder (default: export drivers from this machine)')
@click.pass_context
def inject_drivers(ctx, working_dir, source):
    """Add driver packages to a working directory"""
    if not _pipeline(ctx).customizer.inject_drivers(working_dir, source, _print_progress):
        _fail("No drivers were added")
    _succeed(f"Drivers added to {working_dir}")


@cli.command(name="inject-answer-file")
@click.argument('answer_file')
@click.argument('working_dir')
@click.pass_context
def inject_answer_file(ctx, answer_file, working_dir):
    """Copy an answer file into a working directory as autounattend.xml"""
    if not _pipeline(ctx).customizer.inject_answer_file(answer_file, working_dir):
        _fail(f"Could not add {answer_file}")
    _succeed(f"autounattend.xml added to {working_dir}")


@cli.command(name="download-answer-file")
@click.argument('destination')
@click.option('--url', help='Answer file URL (default from configuration)')
@click.pass_context
def download_answer_file(ctx, destination, url):
    """Download a published autounattend.xml"""
    url = url or ctx.obj['config'].get('answer_file_url')
    saved = _pipeline(ctx).customizer.download_answer_file(destination, url)
    if not saved:
        _fail(f"Download from {url} failed")
    _succeed(f"Saved to {saved}")


@cli.command(name="tool-status")
@click.pass_context
def tool_status(ctx):
    """Show where oscdimg.exe was found"""
    path = _pipeline(ctx).provisioner.get_tool_path()
    if not path:
        click.echo(f"{Fore.YELLOW}⚠️  oscdimg.exe not found{Style.RESET_ALL}")
        click.echo(f"{Fore.CYAN}💡 Run 'wimforge install-tool' to install it with winget{Style.RESET_ALL}")
        sys.exit(1)
    _succeed(f"oscdimg.exe: {path}")


@cli.command(name="install-tool")
@click.pass_context
def install_tool(ctx):
    """Install oscdimg.exe through winget when it is missing"""
    provisioner = _pipeline(ctx).provisioner
    if not provisioner.ensure_tool_available(_print_progress):
        _fail("oscdimg.exe is not available and could not be installed")
    _succeed(f"oscdimg.exe: {provisioner.get_tool_path()}")


@cli.command()
@click.argument('working_dir')
@click.option('--to', 'target', required=True, type=click.Choice([f.value for f in ImageFormat]),
              help='Target container format')
@click.pass_context
def convert(ctx, working_dir, target):
    """Convert install.wim to install.esd or back"""
    target_format = ImageFormat(target)
    cancel_event = threading.Event()
    try:
        converted = _pipeline(ctx).detector.convert_image(working_dir, target_format, cancel_event, _print_progress)
    except KeyboardInterrupt:
        cancel_event.set()
        _fail("Conversion interrupted")
    click.echo()
    if not converted:
        _fail(f"Conversion to {target_format.display_name} failed")
    _succeed(f"Image is now {target_format.file_name}")


@cli.command(name="delete-image")
@click.argument('working_dir')
@click.option('--format', '-f', 'fmt', required=True, type=click.Choice([f.value for f in ImageFormat]),
              help='Container to delete')
@click.option('--force', is_flag=True, help='Delete without confirmation')
@click.pass_context
def delete_image(ctx, working_dir, fmt, force):
    """Delete install.wim or install.esd from a working directory"""
    image_format = ImageFormat(fmt)
    if not force:
        click.confirm(f"Delete {image_format.file_name} from {working_dir}?", abort=True)
    if not _pipeline(ctx).detector.delete_image_file(working_dir, image_format):
        _fail(f"Could not delete {image_format.file_name}")
    _succeed(f"{image_format.file_name} deleted")


@cli.command()
@click.argument('working_dir', required=False)
@click.pass_context
def cleanup(ctx, working_dir):
    """Remove a working directory"""
    target = Path(working_dir) if working_dir else ctx.obj['config'].get_working_dir()
    if not _pipeline(ctx).builder.cleanup_working_directory(target):
        _fail(f"Could not remove {target}")
    _succeed(f"Removed {target}")


if __name__ == '__main__':
    cli()
