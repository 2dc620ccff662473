from faultline.cli import cli

cli()
