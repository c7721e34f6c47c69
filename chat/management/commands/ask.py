from django.core.management.base import BaseCommand, CommandError

from chat.gemini import GeminiClient
from chat.store import CompletionError


class Command(BaseCommand):
    help = "Send one question to Gemini with the chat's prompt framing and print the reply."

    def add_arguments(self, parser):
        parser.add_argument("question")
        parser.add_argument("--simple", action="store_true", help="use the beginner framing")

    def handle(self, *args, **options):
        try:
            reply = GeminiClient().complete(options["question"], options["simple"])
        except CompletionError as e:
            raise CommandError(str(e)) from e
        self.stdout.write(reply)
