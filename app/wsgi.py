from app.dcms import create_app

app = create_app()
