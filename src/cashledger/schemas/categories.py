"""
Expense category taxonomy (closed set).

Every table in this module is keyed by Category and is checked for
completeness at import time, so adding a member without describing it
fails immediately.

Keyword matching is whole-word: "ca" matches "CA fees" but not "Cafe".
"""

from __future__ import annotations

import re
from enum import Enum
from functools import lru_cache


class Category(str, Enum):
    """Ledger category for a transaction."""

    # Personnel & HR
    HIRING = "Hiring"
    SALARIES = "Salaries"
    BENEFITS = "Benefits"
    TRAINING = "Training"
    # Sales & Marketing
    MARKETING = "Marketing"
    SALES = "Sales"
    ADVERTISING = "Advertising"
    EVENTS = "Events"
    # Technology
    SAAS = "SaaS"
    CLOUD = "Cloud"
    IT_INFRASTRUCTURE = "ITInfrastructure"
    SOFTWARE = "Software"
    HARDWARE = "Hardware"
    SECURITY = "Security"
    # Operations
    RENT = "Rent"
    UTILITIES = "Utilities"
    OFFICE_SUPPLIES = "OfficeSupplies"
    EQUIPMENT = "Equipment"
    MAINTENANCE = "Maintenance"
    # Professional services
    LEGAL = "Legal"
    ACCOUNTING = "Accounting"
    CONSULTING = "Consulting"
    PROFESSIONAL_SERVICES = "ProfessionalServices"
    # Travel & Entertainment
    TRAVEL = "Travel"
    MEALS = "Meals"
    ENTERTAINMENT = "Entertainment"
    # Finance
    TAXES = "Taxes"
    INSURANCE = "Insurance"
    BANK_FEES = "BankFees"
    PAYMENT_PROCESSING = "PaymentProcessing"
    INTEREST_CHARGES = "InterestCharges"
    # Other
    RESEARCH_DEVELOPMENT = "ResearchDevelopment"
    CUSTOMER_SUPPORT = "CustomerSupport"
    SUBSCRIPTIONS = "Subscriptions"
    REFUNDS = "Refunds"
    DEPRECIATION = "Depreciation"
    BAD_DEBTS = "BadDebts"
    G_A = "G_A"
    OTHER = "Other"


CATEGORY_DESCRIPTIONS: dict[Category, str] = {
    Category.HIRING: "Recruitment costs, hiring platform fees, job postings, recruitment agencies",
    Category.SALARIES: "Employee salaries, wages, payroll, compensation, bonuses, incentives",
    Category.BENEFITS: "Health insurance, PF, ESIC, gratuity, employee benefits, medical",
    Category.TRAINING: "Employee training, courses, certifications, workshops",
    Category.MARKETING: "General marketing, campaigns, content creation, PR, branding",
    Category.SALES: "Sales commissions, CRM, sales tools, business development",
    Category.ADVERTISING: "Google Ads, Facebook Ads, LinkedIn, social media ads, PPC, display ads",
    Category.EVENTS: "Conferences, exhibitions, trade shows, corporate events, sponsorships",
    Category.SAAS: "Software subscriptions, SaaS tools, licenses, productivity apps",
    Category.CLOUD: "AWS, Azure, GCP, cloud hosting, infrastructure, servers, CDN",
    Category.IT_INFRASTRUCTURE: "Network equipment, datacenter, IT infrastructure, bandwidth",
    Category.SOFTWARE: "One-time software purchases, desktop apps, development tools",
    Category.HARDWARE: "Computers, laptops, phones, printers, monitors, peripherals",
    Category.SECURITY: "Cybersecurity, antivirus, security audits, penetration testing, VPN",
    Category.RENT: "Office rent, lease, coworking space, workspace, property",
    Category.UTILITIES: "Electricity, water, internet, phone bills, broadband, telecom",
    Category.OFFICE_SUPPLIES: "Stationery, office supplies, pantry, consumables",
    Category.EQUIPMENT: "Office furniture, desks, chairs, equipment purchases",
    Category.MAINTENANCE: "Repairs, maintenance, AMC, facility management",
    Category.LEGAL: "Legal fees, lawyer, attorney, contracts, litigation",
    Category.ACCOUNTING: "CA fees, bookkeeping, audit, chartered accountant, tax filing",
    Category.CONSULTING: "Business consulting, strategy, advisory services",
    Category.PROFESSIONAL_SERVICES: "Freelancers, contractors, professional fees, external services",
    Category.TRAVEL: "Flights, hotels, transportation, cab, business travel",
    Category.MEALS: "Team meals, client meals, food expenses, catering",
    Category.ENTERTAINMENT: "Client entertainment, team outings, recreational activities",
    Category.TAXES: "GST, TDS, income tax, professional tax, government fees, duties",
    Category.INSURANCE: "Business insurance, liability, asset insurance, coverage",
    Category.BANK_FEES: "Bank charges, account fees, transaction fees, wire transfer fees",
    Category.PAYMENT_PROCESSING: "Payment gateway charges (Razorpay, Stripe, PayPal)",
    Category.INTEREST_CHARGES: "Loan interest, credit card interest, finance charges",
    Category.RESEARCH_DEVELOPMENT: "R&D expenses, research, prototype development",
    Category.CUSTOMER_SUPPORT: "Support tools, helpdesk, customer service, ticketing systems",
    Category.SUBSCRIPTIONS: "Non-SaaS subscriptions, memberships, recurring services",
    Category.REFUNDS: "Customer refunds, returns, chargebacks, reversals",
    Category.DEPRECIATION: "Asset depreciation, amortization",
    Category.BAD_DEBTS: "Write-offs, uncollectible receivables, bad debt expenses",
    Category.G_A: "General and administrative, miscellaneous operational expenses",
    Category.OTHER: "Uncategorized, miscellaneous",
}

CATEGORY_DISPLAY_NAMES: dict[Category, str] = {
    Category.HIRING: "Hiring & Recruitment",
    Category.SALARIES: "Salaries & Wages",
    Category.BENEFITS: "Employee Benefits",
    Category.TRAINING: "Training & Development",
    Category.MARKETING: "Marketing",
    Category.SALES: "Sales",
    Category.ADVERTISING: "Advertising",
    Category.EVENTS: "Events & Conferences",
    Category.SAAS: "SaaS Tools",
    Category.CLOUD: "Cloud Services",
    Category.IT_INFRASTRUCTURE: "IT Infrastructure",
    Category.SOFTWARE: "Software",
    Category.HARDWARE: "Hardware",
    Category.SECURITY: "Security",
    Category.RENT: "Rent & Facilities",
    Category.UTILITIES: "Utilities",
    Category.OFFICE_SUPPLIES: "Office Supplies",
    Category.EQUIPMENT: "Equipment & Furniture",
    Category.MAINTENANCE: "Maintenance",
    Category.LEGAL: "Legal",
    Category.ACCOUNTING: "Accounting & Audit",
    Category.CONSULTING: "Consulting",
    Category.PROFESSIONAL_SERVICES: "Professional Services",
    Category.TRAVEL: "Travel",
    Category.MEALS: "Meals & Food",
    Category.ENTERTAINMENT: "Entertainment",
    Category.TAXES: "Taxes & Duties",
    Category.INSURANCE: "Insurance",
    Category.BANK_FEES: "Bank Fees",
    Category.PAYMENT_PROCESSING: "Payment Processing",
    Category.INTEREST_CHARGES: "Interest & Finance",
    Category.RESEARCH_DEVELOPMENT: "R&D",
    Category.CUSTOMER_SUPPORT: "Customer Support",
    Category.SUBSCRIPTIONS: "Subscriptions",
    Category.REFUNDS: "Refunds & Returns",
    Category.DEPRECIATION: "Depreciation",
    Category.BAD_DEBTS: "Bad Debts",
    Category.G_A: "General & Admin",
    Category.OTHER: "Other",
}

CATEGORY_GROUPS: dict[str, list[Category]] = {
    "Personnel": [Category.HIRING, Category.SALARIES, Category.BENEFITS, Category.TRAINING],
    "Sales & Marketing": [
        Category.MARKETING,
        Category.SALES,
        Category.ADVERTISING,
        Category.EVENTS,
    ],
    "Technology": [
        Category.SAAS,
        Category.CLOUD,
        Category.IT_INFRASTRUCTURE,
        Category.SOFTWARE,
        Category.HARDWARE,
        Category.SECURITY,
    ],
    "Operations": [
        Category.RENT,
        Category.UTILITIES,
        Category.OFFICE_SUPPLIES,
        Category.EQUIPMENT,
        Category.MAINTENANCE,
    ],
    "Professional Services": [
        Category.LEGAL,
        Category.ACCOUNTING,
        Category.CONSULTING,
        Category.PROFESSIONAL_SERVICES,
    ],
    "Travel & Entertainment": [Category.TRAVEL, Category.MEALS, Category.ENTERTAINMENT],
    "Finance": [
        Category.TAXES,
        Category.INSURANCE,
        Category.BANK_FEES,
        Category.PAYMENT_PROCESSING,
        Category.INTEREST_CHARGES,
    ],
    "Other": [
        Category.RESEARCH_DEVELOPMENT,
        Category.CUSTOMER_SUPPORT,
        Category.SUBSCRIPTIONS,
        Category.REFUNDS,
        Category.DEPRECIATION,
        Category.BAD_DEBTS,
        Category.G_A,
        Category.OTHER,
    ],
}

CATEGORY_KEYWORDS: dict[Category, list[str]] = {
    Category.HIRING: [
        "hiring", "recruitment", "recruiter", "recruiting", "candidate", "interview",
        "job board", "linkedin recruiter", "indeed", "naukri", "talent acquisition",
    ],
    Category.SALARIES: [
        "salary", "salaries", "payroll", "wage", "wages", "compensation", "bonus",
        "incentive", "employee payout", "staff salary", "sal payout", "emp salary",
    ],
    Category.BENEFITS: [
        "pf", "provident fund", "esic", "esi", "gratuity", "health insurance",
        "medical insurance", "group insurance", "employee benefit", "mediclaim", "wellness",
    ],
    Category.TRAINING: [
        "training", "course", "certification", "udemy", "coursera", "workshop",
        "skill development", "learning", "seminar", "webinar registration",
    ],
    Category.MARKETING: [
        "marketing", "campaign", "promotion", "promo", "content", "copywriting", "blog",
        "brand", "branding", "pr", "public relations", "hubspot", "mailchimp", "sendgrid",
    ],
    Category.SALES: [
        "sales commission", "sales tool", "crm", "salesforce", "pipedrive", "zoho crm",
        "business development", "lead generation", "outreach",
    ],
    Category.ADVERTISING: [
        "google ads", "facebook ads", "instagram", "linkedin ads", "twitter ads",
        "social media ad", "ppc", "cpc", "cpm", "adwords", "meta ads", "display ads",
        "bing ads", "youtube ads", "amazon ads",
    ],
    Category.EVENTS: [
        "event", "conference", "exhibition", "booth", "trade show", "sponsorship",
        "meetup", "networking event", "corporate event",
    ],
    Category.SAAS: [
        "saas", "subscription", "slack", "notion", "airtable", "trello", "asana", "jira",
        "confluence", "zoom", "calendly", "figma", "canva", "adobe", "github", "gitlab",
        "bitbucket", "dropbox", "lastpass", "1password", "okta", "auth0", "typeform",
        "surveymonkey", "miro", "loom",
    ],
    Category.CLOUD: [
        "aws", "amazon web services", "azure", "microsoft azure", "gcp", "google cloud",
        "digitalocean", "linode", "vultr", "heroku", "netlify", "vercel", "cloudflare",
        "s3", "ec2", "rds", "cloudfront", "route53", "firebase", "supabase",
        "mongodb atlas", "redis cloud", "elastic cloud", "cloud", "hosting",
    ],
    Category.IT_INFRASTRUCTURE: [
        "infrastructure", "datacenter", "colocation", "bandwidth", "cdn", "fastly",
        "router", "server hosting",
    ],
    Category.SOFTWARE: [
        "software license", "perpetual license", "microsoft office", "windows license",
        "antivirus", "norton", "mcafee", "development tool", "software",
    ],
    Category.HARDWARE: [
        "laptop", "computer", "macbook", "dell", "lenovo", "monitor", "keyboard",
        "mouse", "webcam", "headphone", "printer", "iphone",
    ],
    Category.SECURITY: [
        "security", "cybersecurity", "penetration test", "security audit", "vpn",
        "nordvpn", "crowdstrike", "sophos", "firewall",
    ],
    Category.RENT: [
        "rent", "lease", "office rent", "coworking", "workspace", "wework", "regus",
        "awfis", "premises", "space rental",
    ],
    Category.UTILITIES: [
        "utility", "utilities", "electric", "electricity", "water", "internet", "wifi",
        "broadband", "phone bill", "mobile bill", "telecom", "airtel", "jio", "vodafone",
        "bsnl",
    ],
    Category.OFFICE_SUPPLIES: [
        "stationery", "supplies", "pantry", "snacks", "coffee", "office supplies",
        "toner", "cleaning supplies",
    ],
    Category.EQUIPMENT: [
        "furniture", "desk", "chair", "ergonomic", "office equipment", "filing cabinet",
        "whiteboard", "projector",
    ],
    Category.MAINTENANCE: [
        "maintenance", "repair", "amc", "annual maintenance", "facility", "housekeeping",
        "pest control", "deep cleaning",
    ],
    Category.LEGAL: [
        "legal", "lawyer", "attorney", "law firm", "litigation", "contract review",
        "trademark", "patent", "copyright", "legal counsel", "advocate",
    ],
    Category.ACCOUNTING: [
        "accounting", "ca", "chartered accountant", "bookkeeping", "audit", "auditor",
        "tax filing", "gst filing", "compliance", "quickbooks", "xero", "zoho books", "tally",
    ],
    Category.CONSULTING: [
        "consulting", "consultant", "advisory", "strategy", "management consulting",
        "mckinsey", "bcg", "bain",
    ],
    Category.PROFESSIONAL_SERVICES: [
        "freelance", "freelancer", "contractor", "professional fee", "designer",
        "developer", "agency", "outsource", "upwork", "fiverr", "toptal",
    ],
    Category.TRAVEL: [
        "flight", "airline", "indigo", "spicejet", "air india", "vistara", "hotel", "oyo",
        "marriott", "airbnb", "cab", "uber", "ola", "taxi", "travel", "irctc",
        "makemytrip", "cleartrip",
    ],
    Category.MEALS: [
        "meal", "lunch", "dinner", "breakfast", "food", "restaurant", "swiggy", "zomato",
        "catering",
    ],
    Category.ENTERTAINMENT: [
        "entertainment", "team outing", "party", "celebration", "offsite", "recreational",
        "movie",
    ],
    Category.TAXES: [
        "tax", "gst", "tds", "income tax", "professional tax", "govt fee", "government",
        "challan", "stamp duty", "mca fee",
    ],
    Category.INSURANCE: [
        "insurance", "business insurance", "liability insurance", "premium", "policy",
    ],
    Category.BANK_FEES: [
        "bank charge", "bank charges", "account fee", "bank fee", "rtgs charge",
        "neft charge", "imps charge", "cheque book", "account maintenance",
    ],
    Category.PAYMENT_PROCESSING: [
        "razorpay", "stripe", "paypal", "paytm business", "payment gateway",
        "transaction fee", "processing fee", "merchant fee", "pg charge",
    ],
    Category.INTEREST_CHARGES: [
        "interest", "loan interest", "credit card interest", "emi", "finance charge",
        "overdraft interest",
    ],
    Category.RESEARCH_DEVELOPMENT: [
        "r&d", "research", "innovation", "prototype", "experiment", "lab",
    ],
    Category.CUSTOMER_SUPPORT: [
        "customer support", "helpdesk", "freshdesk", "zendesk", "intercom", "crisp",
        "support tool", "ticketing", "call center",
    ],
    Category.SUBSCRIPTIONS: [
        "membership", "annual subscription", "magazine", "news subscription",
        "club membership",
    ],
    Category.REFUNDS: [
        "refund", "chargeback", "reversal", "credit note", "customer refund",
    ],
    Category.DEPRECIATION: ["depreciation", "amortization"],
    Category.BAD_DEBTS: ["bad debt", "write off", "write-off", "uncollectible"],
    Category.G_A: [
        "general", "admin", "administrative", "miscellaneous", "misc", "office",
        "incorporation", "license", "permit",
    ],
    Category.OTHER: [],
}

# Most specific first. The first category whose keyword hits wins.
PRIORITY_ORDER: list[Category] = [
    Category.SALARIES,
    Category.HIRING,
    Category.BENEFITS,
    Category.TRAINING,
    Category.ADVERTISING,
    Category.CLOUD,
    Category.SAAS,
    Category.IT_INFRASTRUCTURE,
    Category.SECURITY,
    Category.HARDWARE,
    Category.SOFTWARE,
    Category.PAYMENT_PROCESSING,
    Category.BANK_FEES,
    Category.TAXES,
    Category.INSURANCE,
    Category.INTEREST_CHARGES,
    Category.LEGAL,
    Category.ACCOUNTING,
    Category.CONSULTING,
    Category.PROFESSIONAL_SERVICES,
    Category.RENT,
    Category.UTILITIES,
    Category.OFFICE_SUPPLIES,
    Category.EQUIPMENT,
    Category.MAINTENANCE,
    Category.TRAVEL,
    Category.MEALS,
    Category.ENTERTAINMENT,
    Category.EVENTS,
    Category.MARKETING,
    Category.SALES,
    Category.RESEARCH_DEVELOPMENT,
    Category.CUSTOMER_SUPPORT,
    Category.SUBSCRIPTIONS,
    Category.REFUNDS,
    Category.DEPRECIATION,
    Category.BAD_DEBTS,
    Category.G_A,
    Category.OTHER,
]


def _check_tables() -> None:
    members = set(Category)
    for name, table in (
        ("CATEGORY_DESCRIPTIONS", CATEGORY_DESCRIPTIONS),
        ("CATEGORY_DISPLAY_NAMES", CATEGORY_DISPLAY_NAMES),
        ("CATEGORY_KEYWORDS", CATEGORY_KEYWORDS),
    ):
        missing = members - set(table)
        if missing:
            raise RuntimeError(f"{name} is missing {sorted(m.value for m in missing)}")
    if set(PRIORITY_ORDER) != members:
        raise RuntimeError("PRIORITY_ORDER must list every category exactly once")
    grouped = [c for cats in CATEGORY_GROUPS.values() for c in cats]
    if set(grouped) != members or len(grouped) != len(members):
        raise RuntimeError("CATEGORY_GROUPS must place every category in exactly one group")


_check_tables()


@lru_cache(maxsize=None)
def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    return re.compile(r"(?<![a-z0-9])" + re.escape(keyword) + r"(?![a-z0-9])")


def contains_keyword(text: str, keyword: str) -> bool:
    """Whole-word, case-insensitive keyword test."""
    return bool(_keyword_pattern(keyword.lower()).search(text.lower()))


def keyword_hits(description: str, category: Category) -> list[str]:
    """Return the keywords of a category found in a description."""
    desc = description.lower()
    return [kw for kw in CATEGORY_KEYWORDS[category] if _keyword_pattern(kw).search(desc)]


def categorize_description(description: str) -> tuple[Category, str | None]:
    """Categorize a description using the keyword table.

    Returns:
        (category, matched keyword). Category.OTHER with None when nothing hits.
    """
    if not description:
        return Category.OTHER, None

    for category in PRIORITY_ORDER:
        hits = keyword_hits(description, category)
        if hits:
            return category, hits[0]

    return Category.OTHER, None


def display_name(category: Category) -> str:
    """Human-readable name for a category."""
    return CATEGORY_DISPLAY_NAMES[category]


def category_group(category: Category) -> str:
    """Dashboard group of a category."""
    for group, categories in CATEGORY_GROUPS.items():
        if category in categories:
            return group
    return "Other"


def match_category_name(raw: str | None) -> Category | None:
    """Map a free-form category name to a Category.

    Tries enum value, enum member name and display name, all
    case-insensitive. Returns None when nothing matches.
    """
    if not raw or not isinstance(raw, str):
        return None

    wanted = raw.strip().lower()
    squashed = re.sub(r"[\s&_/-]+", "", wanted)

    for category in Category:
        if category.value.lower() == wanted or category.name.lower() == wanted:
            return category
    for category in Category:
        if CATEGORY_DISPLAY_NAMES[category].lower() == wanted:
            return category
    for category in Category:
        if re.sub(r"[\s&_/-]+", "", category.value.lower()) == squashed:
            return category
    return None
