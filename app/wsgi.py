from app.ssms import create_app

app = create_app()
