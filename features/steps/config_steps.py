import io
import os
import tempfile
from contextlib import redirect_stdout
from unittest import mock

from behave import given, when, then

from src.cli import build_config, create_parser, main
from src.guard.config import RunConfig


def _environ(context):
    if not hasattr(context, "environ"):
        context.environ = {}
    return context.environ


@given("the environment")
def step_environment(context):
    env = _environ(context)
    for row in context.table:
        env[row["name"]] = row["value"]


@given("a config file")
def step_config_file(context):
    with tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False, encoding="utf-8") as f:
        f.write(context.text)
    context.config_path = f.name
    context.tmp_files.append(f.name)
    _environ(context)["GUARD_CONFIG"] = f.name


@when("the configuration is read from the environment")
def step_read_environment(context):
    context.run_config = RunConfig.from_env(_environ(context))


@when('the configuration is built with "{key}" set to "{value}"')
def step_build_with(context, key, value):
    try:
        context.run_config = RunConfig().merged({key: value})
    except ValueError as e:
        context.error = e


@when('the command line "{command}" is parsed')
def step_parse_command_line(context, command):
    args = create_parser().parse_args(command.split())
    with mock.patch.dict(os.environ, _environ(context), clear=True):
        context.run_config = build_config(args)


@when('the command line "{command}" runs')
def step_run_command_line(context, command):
    argv = command.replace("CONFIG_FILE", context.config_path).split()
    out = io.StringIO()
    with redirect_stdout(out):
        context.exit_code = main(argv)
    context.output = out.getvalue()


@then('the setting "{name}" is "{value}"')
def step_setting_is(context, name, value):
    assert str(getattr(context.run_config, name)) == value, getattr(context.run_config, name)


@then("the run uses {count:d} workers")
def step_run_uses_workers(context, count):
    assert context.run_config.effective_parallelism == count, context.run_config


@then('the configuration is rejected mentioning "{text}"')
def step_config_rejected(context, text):
    assert isinstance(context.error, ValueError), context.error
    assert text in str(context.error), str(context.error)


@then("the command exits with {code:d}")
def step_command_exit(context, code):
    assert context.exit_code == code, (context.exit_code, context.output)


@then('the command printed "{text}"')
def step_command_printed(context, text):
    assert text in context.output, context.output
