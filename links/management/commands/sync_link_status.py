from django.core.management.base import BaseCommand, CommandError

from links.models import PaymentLink
from links.services import reconcile_link_status


class Command(BaseCommand):
    help = "Pull provider status for ACTIVE payment links and store any change."

    def add_arguments(self, parser):
        parser.add_argument("--link", help="PaymentLink UUID")
        parser.add_argument("--provider", choices=[choice for choice, _ in PaymentLink.PROVIDER_CHOICES])

    def handle(self, *args, **options):
        links = PaymentLink.objects.filter(status=PaymentLink.STATUS_ACTIVE).exclude(provider_link_id=None)
        if options["link"]:
            links = links.filter(pk=options["link"])
            if not links.exists():
                raise CommandError(f"Active link {options['link']} not found.")
        if options["provider"]:
            links = links.filter(provider=options["provider"])

        changed = 0
        for link in links.iterator():
            reconcile_link_status(link)
            if link.status != PaymentLink.STATUS_ACTIVE:
                changed += 1
                self.stdout.write(f"{link.pk}: {link.status}")

        self.stdout.write(self.style.SUCCESS(f"Reconciled links, {changed} changed."))
