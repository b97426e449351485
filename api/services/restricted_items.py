"""
Restricted Items — prohibited content for MRT peer-to-peer delivery.

Three independent screens:
  - RESTRICTED_KEYWORDS: case-insensitive substring match
  - RESTRICTED_PATTERNS: regexes that catch partial/obfuscated forms
  - SUSPICIOUS_PHRASES: wording that implies covert or off-platform dealing
"""

import re

RESTRICTED_KEYWORDS = [
    # Tobacco
    "cigarette", "cigarettes", "cigar", "cigars", "tobacco", "smoke", "smoking",
    "vape", "vapes", "vaping", "e-cigarette", "e-cig", "ecig", "juul",
    "hookah", "shisha", "nicotine", "cigarette lighter", "lighter fluid",

    # Alcohol
    "alcohol", "alcoholic", "beer", "wine", "whiskey", "whisky", "vodka",
    "rum", "gin", "brandy", "champagne", "liquor", "spirits", "cocktail",
    "sake", "soju", "tiger beer", "heineken", "carlsberg",

    # Medicine and pharmaceuticals
    "medicine", "medicines", "medication", "medications", "pill", "pills",
    "tablet", "tablets", "capsule", "capsules", "prescription", "prescribed",
    "drug", "drugs", "pharmaceutical", "supplement", "supplements", "vitamin",
    "vitamins", "antibiotic", "antibiotics", "painkiller", "painkillers",
    "paracetamol", "ibuprofen", "aspirin", "cough syrup", "syrup",
    "injection", "injections", "syringe", "syringes", "medical device",

    # Currency and valuables
    "cash", "money", "currency", "dollar", "dollars", "sgd", "singapore dollar",
    "jewellery", "jewelry", "gold", "silver", "diamond", "diamonds",
    "precious metal", "precious stone", "gem", "gems", "watch", "watches",
    "rolex", "luxury", "valuable", "valuables", "collectible", "collectibles",
    "gift card", "voucher", "vouchers", "cash card", "ez-link",

    # Perishables
    "food", "fresh food", "perishable", "perishables", "hot food", "cold food",
    "refrigerated", "frozen", "ice cream", "cake", "cakes", "pastry", "pastries",
    "meat", "fish", "seafood", "dairy", "milk", "cheese", "yogurt", "yoghurt",
    "fruit", "fruits", "vegetable", "vegetables", "fresh produce",
    "expires", "expiry", "expiration", "spoils", "spoiled",

    # Weapons and sharp objects
    "weapon", "weapons", "knife", "knives", "blade", "blades", "sword",
    "gun", "guns", "firearm", "firearms", "ammunition", "ammo", "bullet",
    "bullets", "explosive", "explosives", "bomb", "bombs", "grenade",
    "scissors", "razor", "razors", "sharp", "pointed", "cutting tool",
    "tool", "tools", "screwdriver", "hammer", "wrench",

    # Flammables and hazardous materials
    "flammable", "combustible", "gasoline", "petrol", "diesel", "fuel",
    "lighter", "matches", "match", "fire", "kerosene",
    "chemical", "chemicals", "acid", "acids", "bleach", "solvent", "solvents",
    "paint", "paints", "thinner", "paint thinner", "adhesive", "glue",
    "aerosol", "aerosols", "spray", "sprays", "deodorant", "hairspray",
    "propane", "butane", "gas", "gas cylinder", "lpg",

    # Liquids
    "liquid", "liquids", "beverage", "beverages", "drink", "drinks",
    "water bottle", "bottle of", "container of liquid",

    # Lithium batteries
    "lithium battery", "lithium batteries", "power bank", "power banks",
    "laptop battery", "phone battery", "spare battery",

    # Powders and gels
    "powder", "powders", "gel", "gels", "cream", "creams", "lotion", "lotions",
    "paste", "pastes", "substance", "substances",

    # Vague or evasive descriptions
    "unknown", "unclear", "mystery", "secret", "confidential", "private",
    "suspicious", "unidentified", "package", "parcel", "item", "thing",

    # Illegal
    "illegal", "contraband", "stolen", "counterfeit", "fake", "pirated",
    "controlled substance", "narcotic", "narcotics", "marijuana", "cannabis",
    "heroin", "cocaine", "meth", "methamphetamine",
]

RESTRICTED_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"cig",
        r"vape",
        r"alcohol",
        r"beer|wine|whiskey|vodka|rum|gin",
        r"medicine|medication|pill|tablet|capsule",
        r"prescription|pharmaceutical",
        r"cash|money|currency|dollar",
        r"jewel|gold|silver|diamond|precious",
        r"food|perishable|fresh|refrigerated|frozen",
        r"weapon|knife|gun|explosive|bomb",
        r"flammable|combustible|gasoline|petrol|fuel",
        r"chemical|acid|bleach|solvent",
        r"liquid|beverage|drink",
        r"lithium.*battery|power.*bank",
        r"powder|gel|cream|paste",
        r"illegal|contraband|stolen|counterfeit",
    )
]

SUSPICIOUS_PHRASES = [
    "don't tell",
    "don't open",
    "keep quiet",
    "don't ask",
    "illegal",
    "hide",
    "secret",
    "confidential",
    "off platform",
    "outside app",
    "direct payment",
    "cash only",
    "no questions",
    "discreet",
    "private",
]

# Narrower list used to screen chat for the auto-flagging engine
SUSPICIOUS_MESSAGE_KEYWORDS = [
    "don't tell", "illegal", "hide", "secret", "off platform", "cash only",
]
