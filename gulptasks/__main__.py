from gulptasks.cli import app

app(prog_name="gulp")
