"""External service integrations for the nutrition portal."""

from .microsoft_teams import FakeTeamsClient, TeamsClient, TeamsError, TeamsMeeting

__all__ = ["FakeTeamsClient", "TeamsClient", "TeamsError", "TeamsMeeting"]
