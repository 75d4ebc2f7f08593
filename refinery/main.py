"""Command-line entry point."""

import asyncio
import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from refinery.config import settings
from refinery.domain.errors import ConfigurationError, ValidationError
from refinery.domain.schema import ProductContext, SystemContext
from refinery.infrastructure.di import get_container
from refinery.utils.logger import configure_logging, get_logger
from refinery.utils.tracing import get_trace_id, setup_tracing

logger = get_logger(__name__)


@click.group()
def cli():
    """Story Refinery CLI."""
    configure_logging(settings.log_level, settings.log_json)
    setup_tracing()


@cli.command()
@click.argument("story_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--advisor", "advisor_ids", multiple=True, help="Advisor id to run (repeatable, in order).")
@click.option("--product-type", default=None, help="web, mobile-native, mobile-web, desktop or api.")
@click.option("--facts", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="SystemContext JSON.")
@click.option("--product", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="ProductContext JSON.")
@click.option("--output", type=click.Path(dir_okay=False, path_type=Path), help="Write enhanced markdown here.")
@click.option("--state-out", type=click.Path(dir_okay=False, path_type=Path), help="Write StoryDocument JSON here.")
@click.option("--retry-bound", type=click.IntRange(min=0), default=None, help="Additional attempts per advisor.")
def refine(
    story_file: Path,
    advisor_ids: Tuple[str, ...],
    product_type: Optional[str],
    facts: Optional[Path],
    product: Optional[Path],
    output: Optional[Path],
    state_out: Optional[Path],
    retry_bound: Optional[int],
):
    """Run the advisor pipeline over STORY_FILE."""
    system_context = SystemContext.model_validate_json(facts.read_text()) if facts else None
    product_context = ProductContext.model_validate_json(product.read_text()) if product else None
    if product_type:
        if product_context is None:
            product_context = ProductContext(product_name="Unnamed product", product_type=product_type)
        else:
            product_context = product_context.model_copy(update={"product_type": product_type})

    orchestrator = get_container().create_orchestrator(retry_bound=retry_bound)

    try:
        result = asyncio.run(
            orchestrator.run(
                story_file.read_text(),
                advisor_ids=list(advisor_ids) or None,
                product_context=product_context,
                system_context=system_context,
            )
        )
    except (ValidationError, ConfigurationError) as e:
        click.echo(f"{e.code}: {e}", err=True)
        sys.exit(2)

    if output:
        output.write_text(result.document.current_content + "\n")
    else:
        click.echo(result.document.current_content)
    if state_out:
        state_out.write_text(result.document.model_dump_json(indent=2))

    if result.summary:
        click.echo(result.summary, err=True)
    logger.info("cli.refine.complete", success=result.success, trace_id=get_trace_id())

    if result.failed:
        for failed in result.document.failed_iterations:
            click.echo(f"Failed: {failed.advisor_id} ({failed.error_type}): {failed.reason}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--product-type", default=None, help="Only list advisors applicable to this product type.")
def advisors(product_type: Optional[str]):
    """List registered advisors in workflow order."""
    registry = get_container().get_advisor_registry()
    for advisor in registry.applicable_for(product_type):
        click.echo(f"{advisor.order:>2}. {advisor.id:<26} {', '.join(advisor.scope)}")


if __name__ == "__main__":
    cli()
