from shellkeep.cli.main import app

app()
