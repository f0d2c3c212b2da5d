"""
CLI entry point, when used as a module: `python -m kontrol`.

Useful for debugging in the IDEs (use the start-mode "Module", module "kontrol").
"""
from kontrol import cli

if __name__ == '__main__':
    cli.main()
