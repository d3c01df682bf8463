import sys

from . import imp


# command -> flags prepended to the importer's own arguments
COMMANDS = {
    "import": [],
    "plan": ["--plan"],
}

USAGE = """usage:
  azs-import import [options]   Apply an exported catalog to the target database
  azs-import plan [options]     Show the ordered import plan and skip reasons without connecting
  azs-import <command> -h       Options of a command"""


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else list(argv)
    if not argv or argv[0] in {"-h", "--help"}:
        print(USAGE)
        return 0

    cmd, args = argv[0], argv[1:]
    if cmd not in COMMANDS:
        print(f"Unknown command: {cmd}\n")
        print(USAGE)
        return 2
    return imp.main([*COMMANDS[cmd], *args])


if __name__ == "__main__":
    raise SystemExit(main())
