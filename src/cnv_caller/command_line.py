#!/usr/bin/env python

import sys
import os
import io
import textwrap
import contextlib
from typing import Text, List, TextIO, Optional, Dict, Callable

from cnv_caller import common


ArgumentParserFunc = Callable[[List[Text]], object]


class Default:
    package = "cnv_caller"
    parse_arguments_name = "__parse_arguments"
    help_commands = frozenset({"help", "-help", "--help", "-h"})
    indent = 2
    max_width = 78


def _to_module_name(command: Text) -> Text:
    """ Commands may be typed in kebab case; modules are in snake case """
    return command.replace('-', '_')


def _to_command_name(module_name: Text) -> Text:
    return module_name.replace('_', '-')


def _find_command_modules(package: Text = Default.package) -> Dict[Text, ArgumentParserFunc]:
    """
    Map each sub-module of package that defines __parse_arguments (i.e. that can be run from the command line) to that
    argument-parsing function
    """
    package_module = common.dynamic_import(package)
    package_folder = list(package_module.__path__)[0]
    this_module = os.path.splitext(os.path.basename(__file__))[0]
    commands = {}
    for file_name in sorted(os.listdir(package_folder)):
        module_name, extension = os.path.splitext(file_name)
        if extension != ".py" or module_name.startswith("__") or module_name == this_module:
            continue
        try:
            commands[module_name] = common.dynamic_import(f"{package}.{module_name}.{Default.parse_arguments_name}")
        except ModuleNotFoundError:
            # not a command-line module
            continue
    return commands


def _get_help_summary(module_name: Text, parse_arguments: ArgumentParserFunc) -> Text:
    """ The description paragraph of a command's --help output """
    help_buffer = io.StringIO()
    with contextlib.redirect_stdout(help_buffer):
        try:
            parse_arguments([module_name, "--help"])
        except SystemExit:
            pass
    # usage, blank line, description, blank line, arguments
    paragraphs = help_buffer.getvalue().split("\n\n")
    summary = paragraphs[1] if len(paragraphs) > 1 else paragraphs[0]
    return " ".join(summary.split()) or "(No help available)"


def print_commands(
        commands: Dict[Text, ArgumentParserFunc],
        file_descriptor: Optional[TextIO] = None,
        package: Text = Default.package
):
    file_descriptor = sys.stdout if file_descriptor is None else file_descriptor
    print(f"{_to_command_name(package)} [command] [args...]", file=file_descriptor)
    print("Valid commands are:", file=file_descriptor)
    indent = " " * Default.indent
    for module_name, parse_arguments in sorted(commands.items()):
        print(f"{indent}{_to_command_name(module_name)}:", file=file_descriptor)
        print(
            textwrap.fill(_get_help_summary(module_name, parse_arguments), width=Default.max_width,
                          initial_indent=indent * 2, subsequent_indent=indent * 2),
            file=file_descriptor
        )
    print("", file=file_descriptor)


def main(argv: Optional[List[Text]] = None):
    """
    Run the command named by the first argument. The remaining arguments are passed on as the command's own argv, so
    that running "cnv-caller call-somatic-cnvs ..." behaves like running the call_somatic_cnvs module directly.
    Args:
        argv: input arguments, sys.argv when called from the command line
    Returns:
        the return value of the command's main function
    """
    argv = sys.argv if argv is None else argv
    commands = _find_command_modules()
    if len(argv) >= 2 and argv[1] in Default.help_commands:
        print_commands(commands)
        return None
    module_name = _to_module_name(argv[1]) if len(argv) >= 2 else None
    if module_name not in commands:
        print("No command specified." if module_name is None else f"Bad command: {argv[1]}", file=sys.stderr)
        print_commands(commands, file_descriptor=sys.stderr)
        sys.exit(1)
    command_main = common.dynamic_import(f"{Default.package}.{module_name}.main")
    return command_main(argv[1:])


if __name__ == "__main__":
    main()
