import click
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from config import config

db = SQLAlchemy()


def create_app(config_name='default'):
    """Application factory — creates and configures the Flask app."""
    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # ── Logging ───────────────────────────────────────────────────
    from app.utils.logging import setup_logging
    setup_logging(app)

    # ── Extensions ────────────────────────────────────────────────
    db.init_app(app)

    # ── Blueprints ────────────────────────────────────────────────
    # imported before app.catalog.models: the catalog models import
    # app.billing.records, and app.billing's routes import the catalog models
    from app.billing import billing as billing_blueprint

    # registers catalog tables with SQLAlchemy before create_all()
    from app.catalog import models  # noqa: F401

    app.register_blueprint(billing_blueprint, url_prefix='/billing')

    # ── Error Handlers ────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'error': 'NotFound', 'message': 'Page not found.'}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({'error': 'MethodNotAllowed', 'message': str(e)}), 405

    @app.errorhandler(500)
    def internal_error(e):
        return jsonify({'error': 'ServerError', 'message': 'Something went wrong.'}), 500

    # ── CLI Commands ──────────────────────────────────────────────
    register_commands(app)

    return app


def register_commands(app):
    """Register custom Flask CLI commands."""

    @app.cli.command('init-db')
    def init_db():
        """Create all database tables and seed the invoice sequence for this year."""
        from datetime import date
        from app.billing.models import InvoiceSequence

        db.create_all()
        click.echo('✅  Database tables created.')

        year = date.today().year
        if not db.session.get(InvoiceSequence, year):
            db.session.add(InvoiceSequence(year=year, last_seq=0))
            db.session.commit()
            click.echo(f'✅  Invoice sequence seeded for {year} (starts at 0).')
        else:
            click.echo(f'ℹ️   Invoice sequence for {year} already exists.')

    @app.cli.command('show-sequences')
    def show_sequences():
        """Show current invoice sequence counters (diagnostic)."""
        from app.billing.models import InvoiceSequence
        rows = InvoiceSequence.query.order_by(InvoiceSequence.year.desc()).all()
        if not rows:
            click.echo('No sequence rows found. Run flask init-db first.')
            return
        click.echo(f'{"Year":<8} {"Last Seq":<12} {"Next Invoice"}')
        click.echo('─' * 35)
        for row in rows:
            next_inv = f'{row.year}-{row.last_seq + 1:04d}'
            click.echo(f'{row.year:<8} {row.last_seq:<12} {next_inv}')

    @app.cli.command('seed-demo')
    def seed_demo():
        """Populate the catalog with demo products, variants and customers."""
        from decimal import Decimal
        from app.catalog.models import Customer, Product, ProductVariant

        click.echo("🌱 Seeding demo data...")
        db.create_all()

        if Product.query.count() == 0:
            db.session.add_all([
                Product(name='Basmati Rice 1kg', sku='RICE-1KG', barcode='DEMO001',
                        price=Decimal('120.00'), stock=80, tax_rate=Decimal('5')),
                Product(name='Notebook A5', sku='NB-A5', barcode='DEMO002',
                        price=Decimal('45.00'), stock=200, tax_rate=Decimal('12')),
                Product(name='Wireless Mouse', sku='MSE-01', barcode='DEMO003',
                        price=Decimal('699.00'), stock=25, tax_rate=Decimal('18')),
            ])
            tshirt = Product(name='Cotton T-Shirt', sku='TS', barcode='DEMO004',
                             price=Decimal('499.00'), stock=0, tax_rate=Decimal('12'))
            tshirt.variants = [
                ProductVariant(name='S', sku='TS-S', barcode='DEMO004-S',
                               price=Decimal('499.00'), stock=15),
                ProductVariant(name='M', sku='TS-M', barcode='DEMO004-M',
                               price=Decimal('499.00'), stock=20),
                ProductVariant(name='XL', sku='TS-XL', barcode='DEMO004-XL',
                               price=Decimal('549.00'), stock=10, tax_rate=Decimal('18')),
            ]
            db.session.add(tshirt)
            click.echo("✅ Products seeded.")

        if Customer.query.count() == 0:
            db.session.add_all([
                Customer(name='Walk-in Customer', phone='0000000000'),
                Customer(name='Priya Sharma', phone='9876543210', points=250),
            ])
            click.echo("✅ Customers seeded.")

        db.session.commit()
        click.echo("✅ Demo seed complete.")
