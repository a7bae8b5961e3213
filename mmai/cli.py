"""mmai/cli.py - Typer-based CLI for the MMAI battle inference core."""

from pathlib import Path
from typing import Optional

import typer

# Main app
app = typer.Typer(
    name="mmai",
    help="MMAI battle inference core",
    rich_markup_mode="rich",
    no_args_is_help=True,
)


def _load_model(model: Path, device: str = "cpu"):
    from .inference import TorchModel

    return TorchModel.from_path(str(model), device=device)


@app.command("info", help="Display model artifact metadata")
def info(
    model: Path = typer.Argument(
        ...,
        help="Path to a TorchScript model artifact",
        exists=True,
    ),
):
    """Display model metadata and its bucket catalog."""
    from rich.console import Console
    from rich.table import Table

    from .exceptions import MMAIError
    from .links import link_type_name

    console = Console()
    try:
        loaded = _load_model(model)
    except MMAIError as e:
        console.print(f"[red]Error loading model:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title=f"MMAI Model: {model.name}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Version", str(loaded.version))
    table.add_row("Side", loaded.side.name)
    table.add_row("Buckets", str(len(loaded.catalog)))
    table.add_row("Link Types", str(loaded.catalog.num_link_types))
    table.add_row("Action Table", str(tuple(loaded.action_table.shape)))
    console.print(table)

    buckets = Table(title="Bucket Catalog")
    buckets.add_column("Bucket", style="cyan")
    for l in range(loaded.catalog.num_link_types):
        buckets.add_column(link_type_name(l), style="green")
    buckets.add_column("ΣE / ΣK", style="bold green")
    for bucket in loaded.catalog:
        cells = [
            f"{e}/{k}" for e, k in zip(bucket.edge_capacity, bucket.neighbor_capacity)
        ]
        buckets.add_row(
            str(bucket.index), *cells, f"{bucket.total_edges}/{bucket.total_neighbors}"
        )
    console.print(buckets)


@app.command("buckets", help="Show which bucket an observation selects")
def buckets_cmd(
    model: Path = typer.Argument(..., help="Path to a TorchScript model artifact", exists=True),
    observation: Path = typer.Argument(..., help="Path to an observation .npz file", exists=True),
    bucket: Optional[int] = typer.Option(
        None,
        "--bucket",
        "-b",
        help="Only consider this catalog index",
    ),
):
    """Per-link-type requirements and the bucket chosen for them."""
    from rich.console import Console
    from rich.table import Table

    from .buckets import required_capacities, select_bucket
    from .exceptions import MMAIError
    from .links import build_link_indices, link_type_name
    from .persistence import load_observation

    console = Console()
    try:
        loaded = _load_model(model)
        obs = load_observation(str(observation))
        indices = build_link_indices(obs.links)
        required = required_capacities(indices)
        chosen = select_bucket(required, loaded.catalog, bucket)
    except MMAIError as e:
        console.print(f"[red]Error selecting bucket:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title=f"Bucket {chosen.index} for {observation.name}")
    table.add_column("Link Type", style="cyan")
    table.add_column("Links", style="green")
    table.add_column("Max Degree", style="green")
    table.add_column("Edge Capacity", style="bold green")
    table.add_column("Neighbor Capacity", style="bold green")
    for l in range(chosen.num_link_types):
        table.add_row(
            link_type_name(l),
            str(required[l, 0]),
            str(required[l, 1]),
            str(chosen.edge_capacity[l]),
            str(chosen.neighbor_capacity[l]),
        )
    console.print(table)


@app.command("decide", help="Run one decision on a stored observation")
def decide(
    observation: Path = typer.Argument(..., help="Path to an observation .npz file", exists=True),
    model: Optional[Path] = typer.Option(
        None,
        "--model",
        "-m",
        help="TorchScript model artifact (default: the configured model for --side)",
        exists=True,
    ),
    side: str = typer.Option(
        "attacker",
        "--side",
        help="Configured model to play when --model is not given: attacker | defender",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration YAML file",
        exists=True,
    ),
    temperature: Optional[float] = typer.Option(
        None,
        "--temperature",
        "-t",
        help="Sampling temperature (0 = greedy)",
    ),
    seed: Optional[int] = typer.Option(
        None,
        "--seed",
        "-s",
        help="Random seed (0 = from the clock)",
    ),
    bucket: Optional[int] = typer.Option(
        None,
        "--bucket",
        "-b",
        help="Force a catalog index",
    ),
):
    """Loads the model and observation, then prints the chosen action."""
    from rich.console import Console
    from rich.table import Table

    from .agent import BattleAgent
    from .config import Config, load_config, validate_config
    from .exceptions import MMAIError
    from .log_setup import setup_logging
    from .persistence import load_observation
    from .registry import FallbackModel, ModelRegistry

    console = Console()
    try:
        cfg = load_config(str(config)) if config else Config()
        if temperature is not None:
            cfg.sampling.temperature = temperature
        if seed is not None:
            cfg.sampling.seed = seed
        if bucket is not None:
            cfg.sampling.bucket_override = bucket
        validate_config(cfg)
        if config:
            setup_logging(cfg.logging)

        obs = load_observation(str(observation))
        if model is not None:
            agent = BattleAgent.from_config(_load_model(model, device=cfg.model.device), cfg.sampling)
        else:
            registry = ModelRegistry(
                cfg.model, loader=lambda path, device: _load_model(Path(path), device=device)
            )
            agent = registry.agent_for(side, cfg.sampling)

        if isinstance(agent, FallbackModel):
            console.print(
                f"[yellow]No model for {side}:[/yellow] scripted {agent.name} plays instead"
            )
            return
        result = agent.decide(obs)
    except MMAIError as e:
        console.print(f"[red]Error during decision:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title=f"Decision for {observation.name}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Action", str(result.action))
    if result.sample is not None:
        table.add_row("Triple", str(result.sample.triple))
        table.add_row("Confidence", f"{result.confidence:.4f}")
        table.add_row("Greedy Action", str(result.greedy_action))
        table.add_row("Bucket", str(result.bucket_index))
        table.add_row("Elapsed", f"{result.elapsed_ms:.2f} ms")
    else:
        table.add_row("Note", "terminal observation")
    console.print(table)


@app.command("export", help="Write a reference policy network as a TorchScript artifact")
def export_cmd(
    output: Path = typer.Argument(..., help="Where to write the .pt artifact"),
    sizes: Optional[str] = typer.Option(
        None,
        "--sizes",
        help="Bucket catalog as JSON [[[E, K], ...], ...] (default: built-in catalog)",
    ),
    state_dim: int = typer.Option(
        64,
        "--state-dim",
        help="Length of the state vector the network accepts",
    ),
    hidden_dim: int = typer.Option(
        32,
        "--hidden-dim",
        help="Hidden layer width",
    ),
    side: str = typer.Option(
        "attacker",
        "--side",
        help="Side the model reports: attacker | defender | both",
    ),
    seed: Optional[int] = typer.Option(
        None,
        "--seed",
        "-s",
        help="Seed for the initial weights",
    ),
):
    """Builds an untrained network with the given catalog and saves it."""
    from rich.console import Console
    from rich.table import Table

    from .buckets import BucketCatalog
    from .constants import LT_COUNT, Side
    from .exceptions import ConfigError, MMAIError
    from .networks import DEFAULT_ALL_SIZES, build_policy_network, save_policy_network

    console = Console()
    try:
        if sizes:
            catalog = BucketCatalog.from_json(sizes, num_link_types=LT_COUNT)
        else:
            catalog = BucketCatalog(DEFAULT_ALL_SIZES, num_link_types=LT_COUNT)
        if side.upper() not in Side.__members__:
            raise ConfigError(f"Unknown side: {side}")
        net = build_policy_network(
            catalog.to_list(),
            state_dim=state_dim,
            hidden_dim=hidden_dim,
            side=Side[side.upper()],
            seed=seed,
        )
        path = save_policy_network(net, str(output))
    except (MMAIError, OSError) as e:
        console.print(f"[red]Export failed:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title=f"Exported Model: {output.name}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Path", path)
    table.add_row("Side", Side[side.upper()].name)
    table.add_row("Buckets", str(len(catalog)))
    table.add_row("State Dim", str(state_dim))
    console.print(table)


@app.command("benchmark", help="Benchmark decision latency on random observations")
def benchmark_cmd(
    model: Path = typer.Argument(..., help="Path to a TorchScript model artifact", exists=True),
    iterations: int = typer.Option(
        100,
        "--iterations",
        "-n",
        help="Number of timed decisions",
    ),
    seed: int = typer.Option(
        0,
        "--seed",
        "-s",
        help="Random seed (0 = from the clock)",
    ),
    state_dim: int = typer.Option(
        64,
        "--state-dim",
        help="Length of the random state vectors",
    ),
    output_dir: Optional[Path] = typer.Option(
        None,
        "--output-dir",
        "-o",
        help="Save JSON results under this directory",
    ),
):
    """Times each decision stage and prints mean timings."""
    from rich.console import Console
    from rich.table import Table

    from .benchmarks import run_decision_benchmark, save_result
    from .exceptions import MMAIError

    console = Console()
    try:
        loaded = _load_model(model)
        result = run_decision_benchmark(loaded, iterations=iterations, seed=seed, state_dim=state_dim)
    except MMAIError as e:
        console.print(f"[red]Benchmark failed:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title=f"Decision Benchmark: {model.name}")
    table.add_column("Stage", style="cyan")
    table.add_column("Mean (ms)", style="green")
    for stage, seconds in result.timings.items():
        table.add_row(stage, f"{seconds * 1000:.3f}")
    table.add_row("decisions/sec", f"{result.metrics['decisions_per_sec']:.1f}")
    console.print(table)

    if output_dir:
        path = save_result(result, str(output_dir))
        console.print(f"Results saved to {path}")


if __name__ == "__main__":
    app()
