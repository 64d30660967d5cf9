"""The ``promptmeter`` command group.

Subcommand groups live in sibling modules and attach themselves with
``@main.group()``; they are imported at the bottom of this module so the
group exists before they run.
"""

import click

from .. import __version__

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"], "max_content_width": 100}


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(__version__, "-V", "--version", prog_name="promptmeter")
def main() -> None:
    """Meter, cache and log LLM API traffic.

    \b
    Common tasks:
        promptmeter proxy --upstream https://api.openai.com
        promptmeter keys create -u bob
        promptmeter logs recent --limit 20
        promptmeter cache purge
    """


from . import cache, keys, logs, proxy  # noqa: E402,F401

if __name__ == "__main__":
    main()
