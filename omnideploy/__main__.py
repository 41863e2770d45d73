from omnideploy.cli import run

run()
