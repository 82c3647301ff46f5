from slipsafe import create_app

app = create_app()
