#!/usr/bin/env python3
"""
Create or promote an approved admin profile for the rental core.
Usage:
  python create_admin.py --user-id auth|42 --name "Club Admin" --email admin@example.edu

The user id is the stable identity the identity provider hands to the app.
The profile is created if missing; an existing one is promoted to an approved
admin. The action is written to the audit trail.
"""
import argparse
import sys

from app import create_app
from models import ActionType, AuditEntry, Role, UserProfile, db


def main(argv=None):
    parser = argparse.ArgumentParser(description='Create or promote an admin profile')
    parser.add_argument('--user-id', '-u', required=True, help='identity provider user id')
    parser.add_argument('--name', '-n', required=True, help='display name')
    parser.add_argument('--email', '-e', default='', help='contact email')
    parser.add_argument('--db-uri', help='optional DB URI to override app config')
    args = parser.parse_args(argv)

    config = {}
    if args.db_uri:
        config['SQLALCHEMY_DATABASE_URI'] = args.db_uri

    app = create_app(config)
    with app.app_context():
        db.create_all()
        profile = UserProfile.query.filter_by(user_id=args.user_id).first()
        created = profile is None
        if created:
            profile = UserProfile(user_id=args.user_id, name=args.name, email=args.email)
            db.session.add(profile)
        profile.role = Role.ADMIN.value
        profile.is_approved = True
        db.session.flush()
        db.session.add(AuditEntry(
            actor_id=profile.id,
            action_type=ActionType.USER_APPROVED.value,
            target_id=profile.id,
            details=f'Admin account bootstrapped for {profile.name}',
        ))
        db.session.commit()
        if created:
            print(f"Created new admin profile for {args.user_id}")
        else:
            print(f"Promoted existing profile '{args.user_id}' to approved admin")
        return 0


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print('Error:', e)
        sys.exit(1)
