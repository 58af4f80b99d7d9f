"""Domain vocabulary for Jamaican election monitoring."""

ELECTION_KEYWORDS = [
    "election",
    "vote",
    "voting",
    "voter",
    "ballot",
    "poll",
    "polling",
    "democracy",
    "candidate",
    "campaign",
    "constituency",
    "electoral",
    "ECJ",
    "nomination day",
    "manifesto",
    "turnout",
    "JLP",
    "PNP",
    "Jamaica Labour Party",
    "People's National Party",
    "Andrew Holness",
    "Mark Golding",
]

# Weaker political signal, one point each when scoring.
POLITICAL_TERMS = [
    "government",
    "parliament",
    "minister",
    "mp",
    "senator",
    "party",
    "policy",
    "opposition",
    "cabinet",
]

COUNTRY_MARKERS = ["Jamaica", "Jamaican"]

EXCLUDE_KEYWORDS = [
    "KFC",
    "chicken",
    "bucket",
    "restaurant",
    "recipe",
    "menu",
    "cricket",
    "football",
    "sports",
    "entertainment",
    "concert",
    "movie",
    "celebrity",
    "weather forecast",
]

PARISHES = [
    "Kingston",
    "St. Andrew",
    "St. Thomas",
    "Portland",
    "St. Mary",
    "St. Ann",
    "Trelawny",
    "St. James",
    "Hanover",
    "Westmoreland",
    "St. Elizabeth",
    "Manchester",
    "Clarendon",
    "St. Catherine",
]

# Major towns mapped to their parish.
LOCALITIES = {
    "Spanish Town": "St. Catherine",
    "Portmore": "St. Catherine",
    "Old Harbour": "St. Catherine",
    "Linstead": "St. Catherine",
    "Half Way Tree": "St. Andrew",
    "Montego Bay": "St. James",
    "May Pen": "Clarendon",
    "Mandeville": "Manchester",
    "Savanna-la-Mar": "Westmoreland",
    "Negril": "Westmoreland",
    "Ocho Rios": "St. Ann",
    "St. Ann's Bay": "St. Ann",
    "Port Antonio": "Portland",
    "Falmouth": "Trelawny",
    "Black River": "St. Elizabeth",
    "Morant Bay": "St. Thomas",
    "Lucea": "Hanover",
    "Port Maria": "St. Mary",
}

POSITIVE_TERMS = [
    "good",
    "great",
    "excellent",
    "support",
    "democracy",
    "fair",
    "transparent",
    "peaceful",
    "progress",
]

NEGATIVE_TERMS = [
    "bad",
    "corrupt",
    "fraud",
    "rigged",
    "violence",
    "threat",
    "illegal",
    "unfair",
    "intimidation",
]

THREAT_KEYWORDS = [
    "violence",
    "attack",
    "threat",
    "intimidation",
    "fraud",
    "corruption",
    "illegal",
    "bribery",
    "manipulation",
    "suppress",
    "rigging",
    "vote buying",
]

PARTIES = ["JLP", "PNP", "Jamaica Labour Party", "People's National Party"]

POLITICIANS = ["Andrew Holness", "Mark Golding"]
