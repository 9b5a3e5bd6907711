#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import Response

from govquery.tools import tools
from typing import List, Annotated, Optional, Tuple, Any
from pathlib import Path
from govquery import log
from typer import Typer, Option, Argument, BadParameter
from rich import console, table, print as pp
from click import Choice
import logging
from govquery.config import settings
from enum import StrEnum, auto
from json import loads, JSONDecodeError
import asyncio
from yaml import safe_dump as dump


class Transports(StrEnum):
    stdio = auto()
    streamable_http = "streamable-http"


def init(
    transport: Transports = Transports.stdio,
    port: int = None,
    host: str = "127.0.0.1",
) -> FastMCP:
    log.logger("init").info("mcp_server_init", transport=transport.value)
    opts = {"log_level": "DEBUG", "debug": True}
    if port is not None:
        opts["port"] = port
    if host is not None:
        opts["host"] = host

    mcp = FastMCP("GovernedQuery", **opts)
    for tool in tools.get_tools():
        tool_instance = tool()
        mcp.add_tool(
            tool_instance.invoke,
            name=tool.name,
            description=tool_instance.invoke.__doc__,
        )

    @mcp.custom_route("/healthz", methods=["GET"])
    async def health_check(_request: Request) -> Response:
        """Kubernetes-style health check endpoint"""
        return Response(content="OK", status_code=200, media_type="text/plain")

    return mcp


ty = Typer(context_settings=dict(help_option_names=["-h", "--help"]))


@ty.command(name="run", help="Run the governed query MCP server")
def main(
    config_file: Annotated[
        Optional[Path],
        Option("-c", "--cfg", help="The config yaml for various options"),
    ] = None,
    log_to_file: Annotated[Optional[bool], Option(help="Log to file")] = True,
    enable_json_logging: Annotated[
        Optional[bool], Option(help="Enable JSON logs")
    ] = False,
    enable_streaming_http: Annotated[
        Optional[bool], Option(help="Run MCP as streaming HTTP")
    ] = False,
    log_level: Annotated[
        Optional[str],
        Option(
            help="The log level", click_type=Choice(list(logging._nameToLevel.keys()))
        ),
    ] = "INFO",
    port: Annotated[Optional[int], Option(help="The port to listen on")] = None,
    host: Annotated[
        Optional[str],
        Option(help="The host to listen on"),
    ] = "127.0.0.1",
    overrides: Annotated[
        Optional[List[str]],
        Option("-o", "--override", help="Override settings as section.field=value"),
    ] = None,
):
    log.configure(enable_json_logging=enable_json_logging, to_file=log_to_file)
    log.set_level(log_level)
    transport = (
        Transports.streamable_http if enable_streaming_http else Transports.stdio
    )

    settings.configure(config_file)
    if overrides:
        settings.instance().with_overrides(dict(map(parse_tool_arg, overrides)))
    app = init(transport=transport, port=port, host=host)
    app.run(transport=transport.value)


tc = Typer(
    context_settings=dict(help_option_names=["-h", "--help"]),
    name="config",
    help="Configuration management",
)


def _settings_yaml() -> str:
    return dump(
        settings.instance().model_dump(exclude_none=True, mode="json", by_alias=True)
    )


@tc.command("list", help="Show the effective configuration")
def show_config(
    config_file: Annotated[
        Optional[Path],
        Option("-c", "--cfg", help="The config yaml, defaults to the default config"),
    ] = None,
    show_filename: Annotated[
        bool, Option(help="Only show the config and log file names")
    ] = False,
):
    cfg = config_file or settings.default_config()
    pp(f"Config file: {cfg!s} (exists = {cfg.exists()!s})")
    if not show_filename:
        settings.configure(cfg)
        cfg_now = settings.instance()
        pp(f"Catalog file: {cfg_now.catalog.file!s}")
        pp(f"Fixtures dir: {cfg_now.executor.fixtures_dir!s}")
        print(_settings_yaml())
    pp(f"Log file: {log.get_log_file()!s}")


@tc.command("create", help="Write a config file for the governed query server")
def create_config(
    catalog_file: Annotated[
        Optional[Path],
        Option("--catalog", help="YAML catalog of approved procedures"),
    ] = None,
    fixtures_dir: Annotated[
        Optional[Path],
        Option("--fixtures", help="Directory of result-set fixtures"),
    ] = None,
    overrides: Annotated[
        Optional[List[str]],
        Option("-o", "--override", help="Other settings as section.field=value"),
    ] = None,
    config_file: Annotated[
        Optional[Path],
        Option("-c", "--cfg", help="Where to write, defaults to the default config"),
    ] = None,
    dry_run: Annotated[
        bool, Option(help="Print the config instead of writing it")
    ] = False,
):
    values = {"catalog.file": catalog_file, "executor.fixtures_dir": fixtures_dir}
    values.update(parse_tool_arg(o) for o in overrides or [])
    inst = settings.Settings().with_overrides(values)

    if dry_run:
        print(settings.write_settings(config_file, inst, dry_run=True))
        return
    settings.write_settings(config_file, inst)
    pp(f"Wrote {config_file or settings.default_config()!s}")


# --------------------------------------------------------------------------------
# testing support

tl = Typer(
    context_settings=dict(help_option_names=["-h", "--help"]),
    name="tools",
    help="Support for testing tools directly",
)


@tl.command(
    name="list",
    help="List the available tools",
    context_settings=dict(help_option_names=["-h", "--help"]),
)
def tools_list():
    tab = table.Table(
        table.Column("Tool", justify="left", style="cyan", no_wrap=True),
        "Description",
        title="Tools list",
        show_lines=True,
    )

    for tool in tools.get_tools():
        doc = (tool.invoke.__doc__ or "No Description").strip()
        tab.add_row(tool.name, doc.splitlines()[0])
    console.Console().print(tab)


def parse_tool_arg(arg: str) -> Tuple[str, Any]:
    if "=" not in arg:
        raise BadParameter(f"Argument {arg} is not in the form arg=value")
    key, value = arg.split("=", 1)
    try:
        return key, loads(value)
    except JSONDecodeError:
        return key, value


@tl.command(
    name="invoke",
    help="Execute an available tools",
    context_settings=dict(help_option_names=["-h", "--help"]),
)
def tools_exec(
    tool: Annotated[str, Option("-t", "--tool", help="The tool to execute")],
    config_file: Annotated[
        Optional[Path],
        Option("-c", "--cfg", help="The config yaml for various options"),
    ] = None,
    args: Annotated[
        Optional[List[str]],
        Argument(help="The arguments to pass to the tool (arg=value ...)"),
    ] = None,
):
    settings.configure(config_file)

    kwargs = dict(map(parse_tool_arg, args or []))
    all_tools = {t.name: t for t in tools.get_tools()}

    if selected := all_tools.get(tool):
        tool_instance = selected()
        result = asyncio.run(tool_instance.invoke(**kwargs))
        pp(result)
    else:
        raise BadParameter(f"Tool {tool} not found")


ty.add_typer(tl)
ty.add_typer(tc)


def cli():
    ty()


if __name__ == "__main__":
    cli()
