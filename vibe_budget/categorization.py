import logging
import re
import unicodedata


logger = logging.getLogger(__name__)


SOURCE_USER_KEYWORD = "user_keyword"
SOURCE_GLOBAL_RULE = "global_rule"
SOURCE_UNCATEGORIZED = "uncategorized"
SOURCE_MANUAL = "manual"

DEFAULT_SYSTEM_CATEGORIES = [
    {
        "name": "Transport",
        "type": "expense",
        "icon": "🚗",
        "color": "#06b6d4",
        "description": "Transport în comun, taxi, rideshare, benzină, parcare, service auto.",
    },
    {
        "name": "Cumpărături",
        "type": "expense",
        "icon": "🛍️",
        "color": "#ec4899",
        "description": "Supermarket, cumpărături online, haine, electronice, mall.",
    },
    {
        "name": "Locuință",
        "type": "expense",
        "icon": "🏠",
        "color": "#ef4444",
        "description": "Chirie, utilități, întreținere, internet, renovări.",
    },
    {
        "name": "Sănătate",
        "type": "expense",
        "icon": "🏥",
        "color": "#14b8a6",
        "description": "Farmacie, consultații, investigații, servicii medicale.",
    },
    {
        "name": "Divertisment",
        "type": "expense",
        "icon": "🎉",
        "color": "#8b5cf6",
        "description": "Cinema, ieșiri, restaurante, cafenele, evenimente.",
    },
    {
        "name": "Subscripții",
        "type": "expense",
        "icon": "🎵",
        "color": "#6366f1",
        "description": "Abonamente recurente: streaming, software, servicii digitale.",
    },
    {
        "name": "Educație",
        "type": "expense",
        "icon": "📚",
        "color": "#3b82f6",
        "description": "Cursuri, cărți, școlarizare, certificări.",
    },
    {
        "name": "Venituri",
        "type": "income",
        "icon": "💰",
        "color": "#10b981",
        "description": "Salarii, bonusuri, freelance, dividende, alte intrări.",
    },
    {
        "name": "Transfer Intern",
        "type": "expense",
        "icon": "🔄",
        "color": "#6366f1",
        "description": "Mutări între conturile proprii (nu cheltuială reală).",
    },
    {
        "name": "Transferuri",
        "type": "expense",
        "icon": "💸",
        "color": "#f59e0b",
        "description": "Transferuri către/de la alte persoane sau servicii externe.",
    },
    {
        "name": "Taxe și Impozite",
        "type": "expense",
        "icon": "📄",
        "color": "#64748b",
        "description": "Taxe, impozite, comisioane administrative, amenzi.",
    },
    {
        "name": "Cash",
        "type": "expense",
        "icon": "💵",
        "color": "#84cc16",
        "description": "Retrageri de numerar și operațiuni cash.",
    },
]

BALANCE_SNAPSHOT_MARKERS = [
    "sold initial",
    "sold final",
    "sold precedent",
    "sold anterior",
    "saldo initial",
    "saldo final",
    "balanta initiala",
    "balanta finala",
    "opening balance",
    "closing balance",
    "initial balance",
    "final balance",
    "beginning balance",
    "ending balance",
    "balance brought forward",
    "balance carried forward",
]

# Checked top to bottom. Plain strings match at the start of a word in the
# normalized description, compiled patterns are searched as-is.
GLOBAL_RULES = [
    (
        "Transfer Intern",
        [
            "transfer intern",
            "intre conturi proprii",
            "cont propriu",
            "between own accounts",
            "to pocket",
            "from pocket",
            "savings vault",
        ],
    ),
    (
        "Taxe și Impozite",
        ["anaf", "impozit", re.compile(r"\btax[ae]\b"), "amenda", "ghiseul.ro", "comision administrare", "dgitl"],
    ),
    (
        "Cash",
        [re.compile(r"\batm\b"), "retragere", "numerar", re.compile(r"\bcash\b(?!back)")],
    ),
    (
        "Venituri",
        ["salariu", "salar", "bonus", "dividend", "dobanda", "incasare", "freelance", "payroll", "salary"],
    ),
    (
        "Transport",
        [
            "benzinarie",
            "petrom",
            "rompetrol",
            "lukoil",
            "socar",
            re.compile(r"\bomv\b"),
            re.compile(r"\bmol\b"),
            re.compile(r"\buber\b(?!\s*eats)"),
            "bolt",
            "taxi",
            "metrorex",
            re.compile(r"\bstb\b"),
            re.compile(r"\bcfr\b"),
            "parcare",
            "parking",
            "tarom",
            "wizz",
            "rovinieta",
            "service auto",
        ],
    ),
    (
        "Cumpărături",
        [
            "kaufland",
            "lidl",
            "carrefour",
            "mega image",
            re.compile(r"\bcora\b"),
            "auchan",
            re.compile(r"\bprofi\b"),
            "penny",
            "selgros",
            "emag",
            "amazon",
            "zara",
            re.compile(r"\bh&m\b"),
            "altex",
            "flanco",
            "ikea",
            "decathlon",
            "fashion days",
            "pepco",
            "supermarket",
            "hypermarket",
        ],
    ),
    (
        "Locuință",
        [
            "orange",
            "vodafone",
            "telekom",
            re.compile(r"\bdigi\b"),
            "enel",
            "engie",
            re.compile(r"\be\.?on\b"),
            "electrica",
            "hidroelectrica",
            "apa nova",
            "intretinere",
            "chirie",
            "leroy merlin",
            "dedeman",
            "hornbach",
            "brico",
        ],
    ),
    (
        "Sănătate",
        [
            "farmaci",
            "catena",
            "sensiblu",
            "help net",
            "dr. max",
            "medicover",
            "regina maria",
            "medlife",
            "synevo",
            "clinica",
            "stomatolog",
            "dentist",
            "spital",
        ],
    ),
    (
        "Subscripții",
        [
            "netflix",
            "spotify",
            "hbo",
            "disney",
            "youtube premium",
            "apple.com",
            "icloud",
            "google storage",
            "chatgpt",
            "openai",
            "adobe",
            "microsoft 365",
            "abonament",
        ],
    ),
    (
        "Educație",
        [
            "carturesti",
            "librari",
            "elefant.ro",
            "udemy",
            "coursera",
            "scoala",
            "universitat",
            re.compile(r"\bcurs\b"),
        ],
    ),
    (
        "Divertisment",
        [
            "restaurant",
            "starbucks",
            "mcdonald",
            "kfc",
            "cafe",
            "cinema",
            "glovo",
            "tazz",
            "uber eats",
            re.compile(r"\bbar\b"),
            re.compile(r"\bpub\b"),
            "concert",
            "bilet",
            "steam",
            "playstation",
        ],
    ),
    (
        "Transferuri",
        [
            "transfer de la",
            "transfer catre",
            "transfer",
            "revolut exchange",
            "exchange",
            "schimb valutar",
            "p2p",
        ],
    ),
]


def normalize_description(value):
    normalized = unicodedata.normalize("NFKD", (value or "").strip().lower())
    no_accents = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", no_accents).strip()


def _compile_rule_pattern(pattern):
    if isinstance(pattern, re.Pattern):
        return pattern
    keyword = normalize_description(pattern)
    return re.compile(r"(?<![0-9a-z])" + re.escape(keyword))


COMPILED_GLOBAL_RULES = [
    (category_name, [_compile_rule_pattern(pattern) for pattern in patterns])
    for category_name, patterns in GLOBAL_RULES
]


def match_global_rule(description):
    """Return ``(category name, matched text)`` for the first matching rule."""
    normalized = normalize_description(description)
    if not normalized:
        return None, None
    for category_name, patterns in COMPILED_GLOBAL_RULES:
        for pattern in patterns:
            match = pattern.search(normalized)
            if match:
                return category_name, match.group(0).strip()
    return None, None


def auto_categorize_by_category_name(description):
    category_name, _matched = match_global_rule(description)
    return category_name


def find_category(categories_by_name, name):
    if not name or not categories_by_name:
        return None
    category = categories_by_name.get(name)
    if category is not None:
        return category
    wanted = normalize_description(name)
    for category_name, candidate in categories_by_name.items():
        if normalize_description(category_name) == wanted:
            return candidate
    return None


def is_balance_snapshot_description(description):
    normalized = normalize_description(description)
    if not normalized:
        return False
    return any(marker in normalized for marker in BALANCE_SNAPSHOT_MARKERS)


def match_user_keyword(description, keywords):
    """Pick the user keyword contained in ``description``.

    The longest keyword wins so that "lidl bonus" beats "lidl"; equal lengths
    go to the keyword created first (lowest id, then list order).
    """
    normalized = normalize_description(description)
    if not normalized:
        return None

    best = None
    best_rank = None
    for position, keyword in enumerate(keywords or []):
        needle = normalize_description(keyword.get("keyword"))
        if not needle or needle not in normalized:
            continue
        keyword_id = keyword.get("id")
        rank = (-len(needle), keyword_id if keyword_id is not None else float("inf"), position)
        if best_rank is None or rank < best_rank:
            best, best_rank = keyword, rank
    return best


def _uncategorized():
    return {
        "category_id": None,
        "category_name": None,
        "source": SOURCE_UNCATEGORIZED,
        "matched": None,
    }


def categorize_transaction(description, keywords, categories_by_name):
    if not normalize_description(description):
        return _uncategorized()

    keyword = match_user_keyword(description, keywords)
    if keyword is not None:
        category_name = keyword.get("category_name")
        if category_name is None:
            category_name = next(
                (
                    name
                    for name, category in (categories_by_name or {}).items()
                    if category["id"] == keyword["category_id"]
                ),
                None,
            )
        return {
            "category_id": keyword["category_id"],
            "category_name": category_name,
            "source": SOURCE_USER_KEYWORD,
            "matched": keyword.get("keyword"),
        }

    rule_category, matched = match_global_rule(description)
    category = find_category(categories_by_name, rule_category)
    if category is None:
        return _uncategorized()
    return {
        "category_id": category["id"],
        "category_name": category["name"],
        "source": SOURCE_GLOBAL_RULE,
        "matched": matched,
    }


def recategorize(transactions, keywords, categories_by_name):
    """Run the cascade over transactions that have no category yet.

    Rows that already carry a category and balance snapshot lines are never
    touched, so a second run over the same data assigns nothing.
    """
    assignments = []
    total = 0
    for transaction in transactions:
        if transaction.get("category_id") is not None:
            continue
        if is_balance_snapshot_description(transaction.get("description")):
            continue
        total += 1
        result = categorize_transaction(transaction.get("description"), keywords, categories_by_name)
        if result["category_id"] is None:
            continue
        assignments.append(
            {
                "transaction_id": transaction["id"],
                "category_id": result["category_id"],
                "category_name": result["category_name"],
                "source": result["source"],
                "matched": result["matched"],
            }
        )

    logger.info("Recategorized %s of %s uncategorized transactions", len(assignments), total)
    return {
        "assignments": assignments,
        "total": total,
        "recategorized": len(assignments),
        "unchanged": total - len(assignments),
    }
