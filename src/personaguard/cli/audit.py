"""
personaguard-audit: static security audit of a source tree.

Exit status is 0 when the audit passes, 1 when unsuppressed findings reach
the failing severity, and 2 on configuration or usage errors.
"""

import sys
from pathlib import Path

import click
from rich.console import Console

from ..audit import SecurityAuditor, SuppressionEngine, default_rule_engine, get_reporter, load_suppressions
from ..audit.reporters import ConsoleReporter
from ..config import PersonaGuardConfig, get_config
from ..security.events import SecurityLog
from ..util.errors import ConfigurationError, PersonaGuardError
from ..util.fs import atomic_write_text
from ..util.log import get_logger, setup_logging

logger = get_logger(__name__)

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2


@click.command()
@click.argument("target", type=click.Path(exists=True, path_type=Path))
@click.option("--suppressions", "suppressions_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="JSON or YAML suppression file")
@click.option("--format", "output_format", type=click.Choice(["console", "json", "sarif", "markdown"]),
              default="console", show_default=True, help="Report format")
@click.option("--output", "output_file", type=click.Path(dir_okay=False, path_type=Path),
              help="Write the report to a file instead of stdout")
@click.option("--fail-on", type=click.Choice(["critical", "high"]), default=None,
              help="Lowest severity that fails the run [default: critical]")
@click.option("--project-root", type=click.Path(exists=True, file_okay=False, path_type=Path),
              help="Root that finding and suppression paths are relative to")
@click.option("--config", "config_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="JSON configuration file")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              default=None, help="Logging level")
def main(target: Path, suppressions_file: Path | None, output_format: str, output_file: Path | None,
         fail_on: str | None, project_root: Path | None, config_file: Path | None, log_level: str | None):
    """Audit TARGET for security issues."""
    console = Console(stderr=True)

    try:
        config = PersonaGuardConfig.load_from_file(config_file) if config_file else get_config()
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e.message}")
        sys.exit(EXIT_CONFIG_ERROR)

    setup_logging(
        level=log_level or config.logging.log_level,
        format_type=config.logging.log_format,
        log_file=config.logging.log_file,
    )

    try:
        suppressions = load_suppressions(suppressions_file) if suppressions_file else []
        engine = default_rule_engine()
        security_log = SecurityLog(
            capacity=config.security_log.capacity,
            persist_path=config.security_log.persist_path,
        )
        auditor = SecurityAuditor(
            config=config.audit,
            engine=engine,
            suppressions=SuppressionEngine(suppressions, project_root),
            security_log=security_log,
            project_root=project_root,
            fail_on=fail_on,
        )
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e.message}")
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        report = auditor.audit(target)
    except PersonaGuardError as e:
        console.print(f"[bold red]Audit failed:[/bold red] {e.message}")
        sys.exit(EXIT_CONFIG_ERROR)
    finally:
        security_log.close()

    reporter = get_reporter(output_format, engine)
    if output_file is not None:
        atomic_write_text(output_file, reporter.render(report))
        console.print(f"Report written to {output_file}")
    elif isinstance(reporter, ConsoleReporter):
        reporter.print(report, Console())
    else:
        click.echo(reporter.render(report))

    sys.exit(report.exit_code)


if __name__ == "__main__":
    main()
