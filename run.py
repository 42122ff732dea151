"""
Entry point for Flask.

Usage (from project root):

    flask --app run.py --debug run
    flask --app run.py db upgrade
    flask --app run.py seed-demo
    flask --app run.py create-admin <username>
"""

from procura import create_app

# WSGI application object; `flask run` and WSGI servers look for `app`.
app = create_app()

if __name__ == "__main__":
    # Development only; use a WSGI server in production.
    app.run(debug=True)
