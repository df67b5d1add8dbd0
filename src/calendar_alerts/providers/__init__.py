from calendar_alerts.providers.forexfactory import ForexFactoryAdapter
from calendar_alerts.providers.myfxbook import MyfxbookAdapter
from calendar_alerts.providers.news import NewsFeed

__all__ = ["ForexFactoryAdapter", "MyfxbookAdapter", "NewsFeed"]
