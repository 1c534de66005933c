from shelfvault import create_app
from shelfvault.logging_utils import vault_rotate_logs_on_startup


vault_rotate_logs_on_startup()
app = create_app()


if __name__ == "__main__":
    # Disable the Werkzeug reloader here to avoid stdin/tty issues in some
    # IDE/terminal environments while still keeping debug features enabled.
    app.run(debug=True, use_reloader=False)
