"""Flask CLI commands for storage maintenance."""
import click
from flask import current_app


def register_cli(app):
    @app.cli.command("init-db")
    def init_db():
        """Create the storage table used by the sql backend."""
        from portraify.extensions import db

        db.create_all()
        click.echo(f"Database initialized ({current_app.config['SQLALCHEMY_DATABASE_URI']}).")

    @app.cli.command("storage-stats")
    def storage_stats():
        """Show what the portrait store holds."""
        from portraify.extensions import get_store

        store = get_store()
        settings = store.settings
        click.echo(f"Backend: {current_app.config['STORAGE_BACKEND']}")
        click.echo(f"Photos: {len(store.photos())} / {settings.max_stored_photos}")
        click.echo(f"Portraits: {len(store.portraits())} / {settings.max_stored_portraits}")
        click.echo(f"Quality: {settings.quality}")
        click.echo(f"Usage: {store.total_storage_usage_kb()} KB")

    @app.cli.command("clear-storage")
    @click.confirmation_option(prompt="Delete all stored photos and portraits?")
    def clear_storage():
        """Remove every photo and portrait; settings are kept."""
        from portraify.extensions import get_store

        get_store().clear_all()
        click.echo("Storage cleared.")

    @app.cli.command("reoptimize")
    @click.option("--quality", type=click.Choice(["low", "medium", "high"]), default=None)
    def reoptimize(quality):
        """Re-encode stored photos, optionally switching the quality tier first."""
        from portraify.extensions import get_store

        store = get_store()
        if quality and quality != store.settings.quality:
            store.update_settings(quality=quality)
        else:
            store.reoptimize_all()
        store.wait()
        click.echo(f"Photos re-optimized at {store.settings.quality} quality "
                   f"({store.total_storage_usage_kb()} KB in use).")
