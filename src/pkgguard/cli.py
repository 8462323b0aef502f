"""CLI entry point for pkgguard."""

import asyncio
import logging
from pathlib import Path

# Load .env file if it exists
from dotenv import load_dotenv
load_dotenv()

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from pkgguard import __version__
from pkgguard.analyzers.osv import SnapshotFeed
from pkgguard.analyzers.pipeline import AnalysisPipeline
from pkgguard.analyzers.typosquatting import TyposquattingDetector, normalize
from pkgguard.errors import PkgGuardError
from pkgguard.models.schemas import (
    AnalysisOptions,
    AnalysisResult,
    DetectorStatus,
    PackageType,
    RiskLevel,
    RiskPolicy,
)

app = typer.Typer(help="Supply-chain risk assessment for npm and Python packages.")

console = Console()

LEVEL_COLORS = {
    RiskLevel.SAFE: "green",
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
}

# Exit code when --fail-on trips
GATE_EXIT_CODE = 2


def _configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s: %(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )


def _parse_level(value: str | None) -> RiskLevel | None:
    if value is None:
        return None
    try:
        return RiskLevel.parse(value)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from None


@app.command()
def analyze(
    path: Path = typer.Argument(..., help="Package directory or manifest file"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Output JSON file"),
    no_deps: bool = typer.Option(False, "--no-deps", help="Skip dependency analysis"),
    no_vulns: bool = typer.Option(False, "--no-vulns", help="Skip vulnerability matching"),
    no_scan: bool = typer.Option(False, "--no-scan", help="Skip malicious pattern scanning"),
    no_typosquat: bool = typer.Option(False, "--no-typosquat", help="Skip typosquatting detection"),
    max_depth: int | None = typer.Option(None, "--max-depth", "-d", min=0, help="Dependency depth (0 = none)"),
    timeout: float | None = typer.Option(None, "--timeout", "-t", min=0.001, help="Overall time budget in seconds"),
    online: bool = typer.Option(
        False, "--online", envvar="PKGGUARD_ONLINE", help="Query registries and OSV instead of the bundled snapshot"
    ),
    advisories: Path | None = typer.Option(None, "--advisories", help="Advisory snapshot JSON file"),
    fail_on: str | None = typer.Option(None, "--fail-on", help="Exit with code 2 at or above this risk level"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Analyze a local package and print its risk verdict."""
    _configure_logging(verbose)
    gate = _parse_level(fail_on)

    try:
        options = AnalysisOptions.from_env(
            analyze_dependencies=False if no_deps else None,
            check_vulnerabilities=False if no_vulns else None,
            scan_malicious_patterns=False if no_scan else None,
            detect_typosquatting=False if no_typosquat else None,
            max_dependency_depth=max_depth,
            timeout_seconds=timeout,
        )
        policy = RiskPolicy.from_env()
        feed = SnapshotFeed.from_file(advisories) if advisories else None
        result = asyncio.run(_analyze(path, options, policy, online, feed, show_progress=not as_json))
    except PkgGuardError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    if as_json:
        typer.echo(result.to_json_string())
    else:
        _print_result(result, policy)

    if output:
        output.write_text(result.to_json_string())
        if not as_json:
            console.print(f"\n[green]Saved to {output}[/green]")

    if gate is not None and result.overall_risk_level >= gate:
        if not as_json:
            console.print(f"[red]Risk level {result.overall_risk_level.value} is at or above {gate.value}[/red]")
        raise typer.Exit(GATE_EXIT_CODE)


async def _analyze(
    path: Path,
    options: AnalysisOptions,
    policy: RiskPolicy,
    online: bool,
    feed: SnapshotFeed | None,
    show_progress: bool,
) -> AnalysisResult:
    """Async implementation of analyze."""
    async with AnalysisPipeline(feed=feed, policy=policy, online=online) as pipeline:
        if not show_progress:
            return await pipeline.analyze(path, options)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task(f"Analyzing {path}...", total=None)
            return await pipeline.analyze(path, options)


def _print_result(result: AnalysisResult, policy: RiskPolicy) -> None:
    package = result.package_info
    assessment = result.risk_assessment
    level = assessment.risk_level
    color = LEVEL_COLORS[level]

    console.print()
    console.print(f"[bold cyan]{package.name}[/bold cyan] {package.version} [dim]({package.package_type.value})[/dim]")
    if package.metadata.description:
        console.print(f"[dim]{package.metadata.description}[/dim]")
    console.print()

    console.print(
        Panel(
            f"[{color}]{level.value.upper()}[/{color}]  overall [bold]{assessment.risk_score.overall:.0f}[/bold] / 100",
            title="Risk Level",
            expand=False,
        )
    )
    for reason in assessment.overrides:
        console.print(f"  [yellow]![/yellow] {reason}")
    console.print()

    # Component scores
    scores_table = Table(title="Risk Breakdown", show_header=True)
    scores_table.add_column("Component", style="bold")
    scores_table.add_column("Score", justify="right")
    scores_table.add_column("Weight", justify="right", style="dim")
    scores_table.add_column("Bar", width=20)
    for name, score in assessment.risk_score.components.items():
        scores_table.add_row(
            name.replace("_", " ").title(),
            f"{score:.0f}",
            f"{policy.weights.get(name, 0) * 100:.0f}%",
            _risk_bar(score),
        )
    console.print(scores_table)

    if result.vulnerabilities:
        vuln_table = Table(title=f"Vulnerabilities ({len(result.vulnerabilities)})")
        vuln_table.add_column("ID", style="cyan")
        vuln_table.add_column("Dependency")
        vuln_table.add_column("Severity", justify="right")
        vuln_table.add_column("Description", max_width=60)
        for vuln in result.vulnerabilities:
            vuln_table.add_row(
                vuln.identifier,
                f"{vuln.dependency_name} {vuln.dependency_constraint}",
                f"{vuln.severity_score:.1f}",
                vuln.description,
            )
        console.print(vuln_table)

    if result.malicious_patterns:
        pattern_table = Table(title=f"Suspicious Patterns ({len(result.malicious_patterns)})")
        pattern_table.add_column("Pattern", style="bold")
        pattern_table.add_column("Severity")
        pattern_table.add_column("Location", style="cyan")
        pattern_table.add_column("Evidence", max_width=60, style="dim")
        for pattern in result.malicious_patterns:
            pattern_table.add_row(pattern.pattern_name, pattern.severity.value, pattern.location, pattern.matched_content)
        console.print(pattern_table)

    typo = result.typosquatting_risk
    if typo and typo.is_potential_typosquatting:
        console.print(
            f"[bold yellow]Possible typosquatting[/bold yellow] of {', '.join(typo.similar_packages)} "
            f"(confidence {typo.confidence_score:.2f})"
        )

    deps = result.dependency_analysis
    console.print(
        f"[bold]Dependencies:[/bold] {deps.breadth} distinct, depth {deps.resolved_depth}"
        + (f", {len(deps.unresolved)} unresolved" if deps.unresolved else "")
    )

    quality = result.quality_metrics
    if quality.computed:
        console.print(
            f"[bold]Quality:[/bold] docs {quality.documentation_score:.2f}, maintenance {quality.maintenance_score:.2f}, "
            f"tests {'yes' if quality.has_tests else 'no'}, CI {'yes' if quality.has_ci_cd else 'no'}"
        )

    degraded = {
        name: report for name, report in result.detectors.items()
        if report.status in (DetectorStatus.DEGRADED, DetectorStatus.FAILED)
    }
    if degraded:
        console.print()
        console.print("[bold yellow]Warnings:[/bold yellow]")
        for name, report in degraded.items():
            for warning in report.warnings:
                subject = f" ({warning.subject})" if warning.subject else ""
                console.print(f"  [yellow]![/yellow] {name}{subject}: {warning.message}")


def _risk_bar(score: float, width: int = 20) -> str:
    """Create a visual risk bar (fuller is worse)."""
    filled = int(score / 100 * width)
    empty = width - filled
    color = "green" if score < 20 else "yellow" if score < 60 else "red"
    return f"[{color}]{'█' * filled}[/{color}][dim]{'░' * empty}[/dim]"


@app.command()
def typosquat(
    name: str = typer.Argument(..., help="Package name to check"),
    ecosystem: str = typer.Option("npm", "--ecosystem", "-e", help="Package ecosystem (npm, python)"),
    threshold: float | None = typer.Option(None, "--threshold", min=0.0, max=1.0, help="Similarity threshold"),
) -> None:
    """Check a package name against popular packages."""
    try:
        package_type = PackageType(ecosystem.lower())
    except ValueError:
        console.print(f"[red]Unsupported ecosystem: {ecosystem}. Supported: npm, python[/red]")
        raise typer.Exit(1)

    policy = RiskPolicy.from_env()
    detector = TyposquattingDetector(threshold=threshold if threshold is not None else policy.typosquatting_threshold)
    risk = detector.check(package_type, name)

    if not risk.is_potential_typosquatting:
        console.print(f"[green]{name}[/green]: no popular {package_type.value} package looks similar")
        return

    table = Table(title=f"'{name}' resembles")
    table.add_column("Package", style="cyan")
    table.add_column("Similarity", justify="right")
    for similar in risk.similar_packages:
        table.add_row(similar, f"{detector.similarity(normalize(package_type, name), normalize(package_type, similar)):.2f}")
    console.print(table)
    console.print(f"Confidence: [bold yellow]{risk.confidence_score:.2f}[/bold yellow]")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"pkgguard v{__version__}")


if __name__ == "__main__":
    app()
