"""Exception types raised across the monitoring pipeline."""


class ElectionWatchError(Exception):
    """Base exception for election monitoring errors"""
    pass


class ConfigError(ElectionWatchError):
    """Invalid or inconsistent configuration"""
    pass


class SourceFetchError(ElectionWatchError):
    """Network, timeout or HTTP status failure while fetching a source"""
    pass


class ParseError(ElectionWatchError):
    """Malformed feed, page or API payload"""
    pass


class QuotaExceeded(ElectionWatchError):
    """Call budget for the current window is used up"""
    pass


class ClassifierError(ElectionWatchError):
    """Classifier service failure other than rate limiting"""
    pass


class ClassifierRateLimited(ClassifierError):
    """Classifier service signalled a rate limit (HTTP 429)"""
    pass


class PersistenceError(ElectionWatchError):
    """Repository read or write failure"""
    pass
