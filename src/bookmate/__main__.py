from bookmate.cli import run

run()
