from central_api.main import run

run()
