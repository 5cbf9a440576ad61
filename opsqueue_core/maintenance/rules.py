"""OpsQueue Rules - Bundled Validation Rules.

Entity shapes the rules expect (extra fields are ignored):

    cards       id, name, set_id, set_code, number, image_url_small,
                image_url_large, supertype
    sets        id, code
    decks       id, name, format, pokemon_count, trainer_count, energy_count
    deck_cards  id, deck_id, card_id, quantity
    collections id, user_id, card_id, quantity
    users       id, username, email, external_id
    prices      id, card_id, market_price, previous_price

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from typing import Dict, List, Tuple
from urllib.parse import urlparse

from opsqueue_core.maintenance.entities import (
    CARDS,
    COLLECTIONS,
    DECK_CARDS,
    DECKS,
    PRICES,
    SETS,
    USERS,
)
from opsqueue_core.maintenance.validation import (
    RuleRegistry,
    RuleSeverity,
    ValidationContext,
    ValidationFix,
    ValidationIssue,
    ValidationRule,
)

logger = logging.getLogger(__name__)

PRICE_ANOMALY_FACTOR = 10
STANDARD_DECK_SIZE = 60
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _valid_url(value) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return bool(parsed.scheme and parsed.netloc)


def check_card_set_references(ctx: ValidationContext) -> List[ValidationIssue]:
    set_ids = ctx.entities.ids(SETS)
    return [
        ValidationIssue(
            entity_type="card",
            entity_id=card["id"],
            field="set_id",
            current_value=card.get("set_id"),
            message=f'Card "{card.get("name")}" references non-existent set',
        )
        for card in ctx.entities.find(CARDS, lambda c: c.get("set_id") not in set_ids)
    ]


def fix_card_set_references(
    ctx: ValidationContext, issues: List[ValidationIssue]
) -> List[ValidationFix]:
    """Relink cards to the set matching their set code, when there is one."""
    sets_by_code = {s.get("code"): s["id"] for s in ctx.entities.find(SETS)}
    fixes = []
    for issue in issues:
        card = ctx.entities.get(CARDS, issue.entity_id)
        set_id = sets_by_code.get(card.get("set_code")) if card else None
        if set_id is None:
            continue
        ctx.entities.update(CARDS, card["id"], {"set_id": set_id})
        fixes.append(ValidationFix("card", card["id"], "set_id", issue.current_value, set_id))
    return fixes


def check_card_images(ctx: ValidationContext) -> List[ValidationIssue]:
    issues = []
    for card in ctx.entities.find(CARDS):
        small, large = card.get("image_url_small"), card.get("image_url_large")
        if not small or not large:
            message = f'Card "{card.get("name")}" missing image URLs'
        elif not (_valid_url(small) and _valid_url(large)):
            message = f'Card "{card.get("name")}" has invalid image URLs'
        else:
            continue
        issues.append(ValidationIssue("card", card["id"], message))
    return issues


def check_price_anomalies(ctx: ValidationContext) -> List[ValidationIssue]:
    issues = []
    for price in ctx.entities.find(PRICES):
        current, previous = price.get("market_price"), price.get("previous_price")
        if not current or not previous:
            continue
        if current > previous * PRICE_ANOMALY_FACTOR or current < previous / PRICE_ANOMALY_FACTOR:
            issues.append(
                ValidationIssue(
                    entity_type="price",
                    entity_id=price["id"],
                    current_value=current,
                    expected_value=previous,
                    message=(
                        f"Price anomaly for card {price.get('card_id')}: "
                        f"${previous} -> ${current}"
                    ),
                )
            )
    return issues


def check_orphaned_deck_cards(ctx: ValidationContext) -> List[ValidationIssue]:
    card_ids = ctx.entities.ids(CARDS)
    decks = {d["id"]: d for d in ctx.entities.find(DECKS)}
    issues = []
    for deck_card in ctx.entities.find(DECK_CARDS, lambda dc: dc.get("card_id") not in card_ids):
        deck_name = decks.get(deck_card.get("deck_id"), {}).get("name", deck_card.get("deck_id"))
        issues.append(
            ValidationIssue(
                entity_type="deckCard",
                entity_id=deck_card["id"],
                field="card_id",
                current_value=deck_card.get("card_id"),
                message=f'Deck "{deck_name}" contains reference to non-existent card',
            )
        )
    return issues


def fix_orphaned_deck_cards(
    ctx: ValidationContext, issues: List[ValidationIssue]
) -> List[ValidationFix]:
    deleted = ctx.entities.delete(DECK_CARDS, [issue.entity_id for issue in issues])
    logger.info(f"Deleted {deleted} orphaned deck cards")
    return [ValidationFix("deckCard", issue.entity_id, "deleted", False, True) for issue in issues]


def _deck_totals(ctx: ValidationContext) -> Dict[str, List[dict]]:
    by_deck: Dict[str, List[dict]] = defaultdict(list)
    for deck_card in ctx.entities.find(DECK_CARDS):
        by_deck[deck_card.get("deck_id")].append(deck_card)
    return by_deck


def check_deck_sizes(ctx: ValidationContext) -> List[ValidationIssue]:
    by_deck = _deck_totals(ctx)
    issues = []
    for deck in ctx.entities.find(DECKS, lambda d: d.get("format") == "standard"):
        total = sum(dc.get("quantity", 0) for dc in by_deck.get(deck["id"], []))
        if total != STANDARD_DECK_SIZE:
            issues.append(
                ValidationIssue(
                    entity_type="deck",
                    entity_id=deck["id"],
                    current_value=total,
                    expected_value=STANDARD_DECK_SIZE,
                    message=(
                        f'Deck "{deck.get("name")}" has {total} cards '
                        f"(Standard format requires {STANDARD_DECK_SIZE})"
                    ),
                )
            )
    return issues


def check_collection_integrity(ctx: ValidationContext) -> List[ValidationIssue]:
    return [
        ValidationIssue(
            entity_type="userCollection",
            entity_id=item["id"],
            field="quantity",
            current_value=item.get("quantity"),
            message=(
                f"User {item.get('user_id')} has negative quantity "
                f"for card {item.get('card_id')}"
            ),
        )
        for item in ctx.entities.find(COLLECTIONS, lambda i: (i.get("quantity") or 0) < 0)
    ]


def check_duplicate_cards(ctx: ValidationContext) -> List[ValidationIssue]:
    groups: Dict[Tuple, List[dict]] = defaultdict(list)
    for card in ctx.entities.find(CARDS):
        groups[(card.get("name"), card.get("set_code"), card.get("number"))].append(card)

    issues = []
    for (name, set_code, number), cards in groups.items():
        # The first entry is the one kept
        for card in cards[1:]:
            issues.append(
                ValidationIssue(
                    "card", card["id"], f'Duplicate card: "{name}" in set {set_code} #{number}'
                )
            )
    return issues


def fix_duplicate_cards(
    ctx: ValidationContext, issues: List[ValidationIssue]
) -> List[ValidationFix]:
    """Report-only: duplicates are never merged automatically.

    Merging would have to move deck and collection references onto the
    kept card first, so that fix is deferred to an operator and this
    returns no fixes.
    """
    return []


def check_user_data(ctx: ValidationContext) -> List[ValidationIssue]:
    issues = []
    for user in ctx.entities.find(USERS):
        if not user.get("external_id"):
            issues.append(
                ValidationIssue(
                    entity_type="user",
                    entity_id=user["id"],
                    field="external_id",
                    message=f'User "{user.get("username")}" missing external ID',
                )
            )
        email = user.get("email")
        if email and not EMAIL_PATTERN.match(email):
            issues.append(
                ValidationIssue(
                    entity_type="user",
                    entity_id=user["id"],
                    field="email",
                    current_value=email,
                    message=f'User "{user.get("username")}" has invalid email format',
                )
            )
    return issues


def check_foreign_keys(ctx: ValidationContext) -> List[ValidationIssue]:
    user_ids = ctx.entities.ids(USERS)
    card_ids = ctx.entities.ids(CARDS)
    return [
        ValidationIssue(
            "userCollection",
            item["id"],
            "User collection entry with invalid foreign key reference",
        )
        for item in ctx.entities.find(
            COLLECTIONS,
            lambda i: i.get("user_id") not in user_ids or i.get("card_id") not in card_ids,
        )
    ]


def check_data_consistency(ctx: ValidationContext) -> List[ValidationIssue]:
    """Stored deck statistics must match the cards the deck holds."""
    supertypes = {c["id"]: c.get("supertype") for c in ctx.entities.find(CARDS)}
    by_deck = _deck_totals(ctx)
    issues = []
    for deck in ctx.entities.find(DECKS):
        counts = {"POKEMON": 0, "TRAINER": 0, "ENERGY": 0}
        for deck_card in by_deck.get(deck["id"], []):
            supertype = supertypes.get(deck_card.get("card_id"))
            if supertype in counts:
                counts[supertype] += deck_card.get("quantity", 0)
        stored = (
            deck.get("pokemon_count", 0),
            deck.get("trainer_count", 0),
            deck.get("energy_count", 0),
        )
        if stored != (counts["POKEMON"], counts["TRAINER"], counts["ENERGY"]):
            issues.append(
                ValidationIssue(
                    "deck", deck["id"], f'Deck "{deck.get("name")}" statistics don\'t match actual cards'
                )
            )
    return issues


def default_rules() -> RuleRegistry:
    """Registry of the bundled rules, in execution order."""
    return RuleRegistry([
        ValidationRule(
            name="card-set-reference",
            description="Validate all cards have valid set references",
            severity=RuleSeverity.ERROR,
            scope=frozenset({"cards"}),
            validate=check_card_set_references,
            auto_fix=fix_card_set_references,
        ),
        ValidationRule(
            name="card-images",
            description="Validate card image URLs",
            severity=RuleSeverity.WARNING,
            scope=frozenset({"cards"}),
            validate=check_card_images,
        ),
        ValidationRule(
            name="price-anomaly",
            description="Detect unusual price changes",
            severity=RuleSeverity.WARNING,
            scope=frozenset({"prices"}),
            validate=check_price_anomalies,
        ),
        ValidationRule(
            name="orphaned-deck-cards",
            description="Find deck cards without valid card references",
            severity=RuleSeverity.ERROR,
            scope=frozenset({"decks"}),
            validate=check_orphaned_deck_cards,
            auto_fix=fix_orphaned_deck_cards,
        ),
        ValidationRule(
            name="deck-size",
            description="Validate deck sizes match format requirements",
            severity=RuleSeverity.WARNING,
            scope=frozenset({"decks"}),
            validate=check_deck_sizes,
        ),
        ValidationRule(
            name="collection-integrity",
            description="Validate user collection data integrity",
            severity=RuleSeverity.ERROR,
            scope=frozenset({"collections"}),
            validate=check_collection_integrity,
        ),
        ValidationRule(
            name="duplicate-cards",
            description="Detect duplicate card entries",
            severity=RuleSeverity.ERROR,
            scope=frozenset({"cards"}),
            validate=check_duplicate_cards,
            auto_fix=fix_duplicate_cards,
        ),
        ValidationRule(
            name="user-data-integrity",
            description="Validate user account data",
            severity=RuleSeverity.ERROR,
            scope=frozenset({"users"}),
            validate=check_user_data,
        ),
        ValidationRule(
            name="foreign-key-constraints",
            description="Validate all foreign key relationships",
            severity=RuleSeverity.ERROR,
            scope=frozenset({"all"}),
            validate=check_foreign_keys,
        ),
        ValidationRule(
            name="data-consistency",
            description="Check data consistency across related tables",
            severity=RuleSeverity.WARNING,
            scope=frozenset({"all"}),
            validate=check_data_consistency,
        ),
    ])


__all__ = ["default_rules", "PRICE_ANOMALY_FACTOR", "STANDARD_DECK_SIZE"]
