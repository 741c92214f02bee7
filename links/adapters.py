from allauth.account.adapter import DefaultAccountAdapter


class StaffOnlyAccountAdapter(DefaultAccountAdapter):
    """
    Accounts are provisioned by administrators (admin site or ``loaddemo``),
    so the public signup form is closed.
    """

    def is_open_for_signup(self, request):
        return False
