"""popsync: keep Jira epics and their issues mirrored as markdown documents."""

__version__ = '0.1.0'
