from clm.worker.main import run

run()
