"""CLI entrypoint for p2p-relay."""

import logging
from pathlib import Path

import rich_click as click

from p2p_relay import __version__
from p2p_relay.pipeline.controllers import (
    BlacklistAddCommand,
    InspectTransactionCommand,
    ListTransactionsCommand,
    ModeCommand,
    PipelineCliController,
    RunCommand,
    SetRateCommand,
    StateCommand,
    TemplateAddCommand,
    TemplateListCommand,
    TemplateMatchCommand,
)
from p2p_relay.pipeline.models import ConfirmationMode, TransactionStatus
from p2p_relay.scheduler.snapshot import SnapshotError

click.rich_click.USE_MARKDOWN = True
PIPELINE_CONTROLLER = PipelineCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="p2p-relay")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def p2p_relay(log_level: str) -> None:
    """P2P payout relay CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@p2p_relay.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--gateways",
    required=True,
    help="Gateway factory as `package.module:factory` returning a GatewayBundle.",
)
@click.option(
    "--state-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Scheduler snapshot file (overrides P2P_RELAY_STATE_PATH).",
)
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Run every pipeline stage once and exit.",
)
def run(db_path: Path | None, gateways: str, state_path: Path | None, once: bool) -> None:
    """Run the pipeline scheduler until interrupted."""

    try:
        lines = PIPELINE_CONTROLLER.run(
            RunCommand(db_path=db_path, gateways=gateways, once=once, state_path=state_path),
            prompt=_operator_prompt,
        )
    except SnapshotError as error:
        raise click.ClickException(f"Scheduler snapshot is unreadable: {error}") from error
    except (ValueError, TypeError, ImportError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@p2p_relay.command("transactions")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TransactionStatus]),
    default=None,
    help="Only show transactions in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum rows to display.",
)
def transactions(db_path: Path | None, status: str | None, limit: int) -> None:
    """List pipeline transactions."""

    _emit_lines(
        PIPELINE_CONTROLLER.list_transactions(
            ListTransactionsCommand(
                db_path=db_path,
                status=TransactionStatus(status) if status else None,
                limit=limit,
            ),
        ),
    )


@p2p_relay.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--transaction-id", required=True, help="Transaction id to inspect.")
def inspect_transaction(db_path: Path | None, transaction_id: str) -> None:
    """Show one transaction with its payout and chat history."""

    _emit_lines(
        PIPELINE_CONTROLLER.inspect_transaction(
            InspectTransactionCommand(db_path=db_path, transaction_id=transaction_id),
        ),
    )


@p2p_relay.command("mode")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument(
    "mode",
    required=False,
    type=click.Choice([mode.value for mode in ConfirmationMode]),
)
def confirmation_mode(db_path: Path | None, mode: str | None) -> None:
    """Show or set the confirmation mode (`auto` or `manual`)."""

    _emit_lines(
        PIPELINE_CONTROLLER.mode(
            ModeCommand(db_path=db_path, mode=ConfirmationMode(mode) if mode else None),
        ),
    )


@p2p_relay.command("set-rate")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("rate", type=float)
def set_rate(db_path: Path | None, rate: float) -> None:
    """Store the fiat-per-crypto exchange rate used to price advertisements."""

    try:
        lines = PIPELINE_CONTROLLER.set_rate(SetRateCommand(db_path=db_path, rate=rate))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@p2p_relay.group()
def templates() -> None:
    """Chat template commands."""


@templates.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Template name.")
@click.option("--message", required=True, help="Reply text sent to the counterparty.")
@click.option(
    "--keyword",
    "keywords",
    multiple=True,
    required=True,
    help="Trigger keyword. Can be repeated.",
)
@click.option(
    "--priority",
    type=int,
    default=0,
    show_default=True,
    help="Tie-break between equally scored templates; higher wins.",
)
def templates_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    message: str,
    keywords: tuple[str, ...],
    priority: int,
) -> None:
    """Add a chat template."""

    try:
        lines = PIPELINE_CONTROLLER.add_template(
            TemplateAddCommand(
                db_path=db_path,
                name=name,
                message=message,
                keywords=keywords,
                priority=priority,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@templates.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def templates_list(db_path: Path | None) -> None:
    """List active chat templates."""

    _emit_lines(PIPELINE_CONTROLLER.list_templates(TemplateListCommand(db_path=db_path)))


@templates.command("match")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("message")
def templates_match(db_path: Path | None, message: str) -> None:
    """Show which template would answer MESSAGE."""

    _emit_lines(
        PIPELINE_CONTROLLER.match_template(TemplateMatchCommand(db_path=db_path, message=message)),
    )


@p2p_relay.group()
def blacklist() -> None:
    """Wallet blacklist commands."""


@blacklist.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", default="manual", show_default=True, help="Why the wallet is blocked.")
@click.argument("wallet")
def blacklist_add(db_path: Path | None, reason: str, wallet: str) -> None:
    """Block payouts to WALLET."""

    _emit_lines(
        PIPELINE_CONTROLLER.add_to_blacklist(
            BlacklistAddCommand(db_path=db_path, wallet=wallet, reason=reason),
        ),
    )


@p2p_relay.command("state")
@click.option(
    "--state-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Scheduler snapshot file (defaults to P2P_RELAY_STATE_PATH).",
)
def state(state_path: Path | None) -> None:
    """Print the persisted scheduler snapshot."""

    try:
        lines = PIPELINE_CONTROLLER.state(StateCommand(state_path=state_path))
    except SnapshotError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _operator_prompt(action: str) -> bool:
    return click.confirm(action, default=False)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    p2p_relay()
