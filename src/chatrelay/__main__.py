from chatrelay.main import run

run()
