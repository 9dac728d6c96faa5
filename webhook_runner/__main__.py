"""Command-line entry point: ``python -m webhook_runner [--flags]``.

Every setting can be given as a flag (``--commit-command``), an
environment variable (``COMMIT_COMMAND``) or in ``.env``; flags win.
"""

from __future__ import annotations

import uvicorn
from pydantic_settings import SettingsConfigDict

from webhook_runner.config import Settings
from webhook_runner.main import configure_logging, create_app


class CliSettings(Settings):
    model_config = SettingsConfigDict(
        cli_parse_args=True,
        cli_prog_name="webhook-runner",
        cli_kebab_case=True,
    )


def main() -> None:
    settings = CliSettings()
    configure_logging(settings.log_level)
    host, port = settings.bind_host_port()
    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
