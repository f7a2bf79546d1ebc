import argparse

from app import create_app
from models import db


def main(argv=None):
    parser = argparse.ArgumentParser(description='Create the rental core tables')
    parser.add_argument('--reset', action='store_true', help='drop every table first')
    args = parser.parse_args(argv)

    app = create_app()
    with app.app_context():
        if args.reset:
            db.drop_all()
            print('Dropped existing tables')
        db.create_all()
        print(f"Initialized database ({app.config['SQLALCHEMY_DATABASE_URI']})")


if __name__ == '__main__':
    main()
