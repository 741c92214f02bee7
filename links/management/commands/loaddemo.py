from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand

from links.models import UserProfile


class Command(BaseCommand):
    help = "Create the initial SUPERADMIN account for the dashboard."

    def add_arguments(self, parser):
        parser.add_argument("--email", default="admin@linkpagos.com")
        parser.add_argument("--password", default="admin123")

    def handle(self, *args, **options):
        User = get_user_model()
        email = options["email"]
        user, created = User.objects.get_or_create(
            username=email,
            defaults={
                "email": email,
                "first_name": "Super Admin",
                "is_staff": True,
                "is_superuser": True,
            },
        )
        if created:
            user.set_password(options["password"])
            user.save()
            self.stdout.write(self.style.SUCCESS(f"Created SUPERADMIN {email} / {options['password']}"))
        else:
            self.stdout.write("SUPERADMIN already exists.")

        profile, _ = UserProfile.objects.get_or_create(user=user)
        if profile.role != UserProfile.ROLE_SUPERADMIN:
            profile.role = UserProfile.ROLE_SUPERADMIN
            profile.save(update_fields=["role", "updated_at"])

        self.stdout.write(self.style.SUCCESS("Demo data ready."))
