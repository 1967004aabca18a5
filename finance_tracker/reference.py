from datetime import date


def normalize_name(value):
    return " ".join(str(value or "").strip().lower().split())


class ReferenceSnapshot:
    """Point-in-time view of the accounts, categories and goals a row may name.

    Lookups are case-insensitive exact name matches. A snapshot is loaded once
    per import session and is never refreshed behind the caller's back.
    """

    def __init__(self, accounts=None, categories=None, goals=None, as_of=None):
        self.accounts = [dict(account) for account in accounts or []]
        self.categories = [dict(category) for category in categories or []]
        self.goals = [dict(goal) for goal in goals or []]
        self.as_of = as_of or date.today()

    @property
    def goal_names(self):
        return [goal["name"] for goal in self.goals]

    @property
    def account_names(self):
        return [account["name"] for account in self.accounts]

    def category_names(self, category_type=None):
        return [
            category["name"]
            for category in self.categories
            if category_type is None or category.get("type") == category_type
        ]

    def find_account(self, name):
        wanted = normalize_name(name)
        if not wanted:
            return None
        for account in self.accounts:
            if normalize_name(account["name"]) == wanted:
                return account
        return None

    def find_category(self, name, category_type):
        wanted = normalize_name(name)
        if not wanted:
            return None
        for category in self.categories:
            if normalize_name(category["name"]) == wanted and category.get("type") == category_type:
                return category
        return None

    def find_goal(self, name):
        wanted = normalize_name(name)
        if not wanted:
            return None
        for goal in self.goals:
            if normalize_name(goal["name"]) == wanted:
                return goal
        return None

    def to_dict(self):
        return {
            "accounts": self.accounts,
            "categories": self.categories,
            "goals": self.goals,
            "as_of": self.as_of.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload):
        payload = payload or {}
        as_of = payload.get("as_of")
        return cls(
            accounts=payload.get("accounts"),
            categories=payload.get("categories"),
            goals=payload.get("goals"),
            as_of=date.fromisoformat(as_of) if as_of else None,
        )
