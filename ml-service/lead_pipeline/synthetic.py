"""
Synthetic real-estate leads for local runs, demos and tests.

Each lead gets a latent "intent" that drives how often it interacts, how
complete its profile is, how large its budget is, and (through a noisy
logistic link) whether it converted.  Everything is seeded.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List

import numpy as np

from .records import HistoricalLead, Interaction, LeadSnapshot, PropertyPref

logger = logging.getLogger(__name__)

CHANNELS = ["email", "phone", "meeting", "website"]
CHANNEL_WEIGHTS = [0.40, 0.25, 0.10, 0.25]
DOMAINS = ["gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "acme-realty.com", "example.org"]
PROPERTY_TYPES = ["house", "condo", "townhouse", "apartment"]
FIRST_NAMES = ["Alex", "Sam", "Jordan", "Taylor", "Morgan", "Casey", "Riley", "Jamie"]
LAST_NAMES = ["Smith", "Garcia", "Chen", "Patel", "Okafor", "Novak", "Silva", "Kim"]


def generate_leads(
    n: int,
    now: datetime,
    seed: int = 42,
    open_fraction: float = 0.0,
    start_id: int = 1,
) -> List[HistoricalLead]:
    """Generate *n* leads created within the year before *now*.

    ``open_fraction`` of them are left without an outcome (status ``new``).
    """
    rng = np.random.default_rng(seed)
    leads: List[HistoricalLead] = []
    converted = 0

    for i in range(n):
        lead_id = start_id + i
        intent = rng.normal(0.0, 1.0)
        age_days = float(rng.uniform(5, 365))
        created_at = now - timedelta(days=age_days)

        has_email = rng.random() < 0.85 + 0.05 * np.tanh(intent)
        has_phone = rng.random() < 0.6 + 0.2 * np.tanh(intent)
        email = None
        if has_email:
            domain = DOMAINS[int(rng.integers(len(DOMAINS)))]
            email = f"lead{lead_id}@{domain}"

        n_interactions = int(rng.poisson(max(0.2, 4.0 + 3.0 * intent)))
        interactions = []
        for _ in range(n_interactions):
            offset = float(rng.uniform(0, age_days))
            interactions.append(Interaction(
                type=CHANNELS[int(rng.choice(len(CHANNELS), p=CHANNEL_WEIGHTS))],
                created_at=created_at + timedelta(days=offset),
            ))

        prefs = []
        for _ in range(int(rng.integers(0, 4))):
            low = float(rng.uniform(150_000, 600_000) * (1.0 + 0.3 * max(intent, -0.9)))
            prefs.append(PropertyPref(
                price_range_min=round(low, -3),
                price_range_max=round(low * float(rng.uniform(1.1, 1.5)), -3),
                property_type=PROPERTY_TYPES[int(rng.integers(len(PROPERTY_TYPES)))],
                bedrooms=float(rng.integers(1, 6)),
                bathrooms=float(rng.integers(1, 4)),
                square_feet=float(rng.integers(600, 4000)),
            ))

        logit = -0.4 + 1.6 * intent + 0.15 * min(n_interactions, 10) - 0.002 * age_days
        prob = 1.0 / (1.0 + np.exp(-logit))
        is_open = rng.random() < open_fraction
        updated_at = created_at + timedelta(days=float(rng.uniform(0, age_days)))
        converted_at = None
        if is_open:
            status = "new"
        elif rng.random() < prob:
            status = "converted"
            converted_at = updated_at
            converted += 1
        else:
            status = "lost"

        lead = LeadSnapshot(
            id=lead_id,
            created_at=created_at,
            first_name=FIRST_NAMES[int(rng.integers(len(FIRST_NAMES)))],
            last_name=LAST_NAMES[int(rng.integers(len(LAST_NAMES)))] if rng.random() < 0.9 else None,
            email=email,
            phone=f"+1555{lead_id:07d}" if has_phone else None,
            address="1 Main St" if rng.random() < 0.4 + 0.2 * np.tanh(intent) else None,
            status=status,
            updated_at=updated_at,
            converted_at=converted_at,
        )
        leads.append(HistoricalLead(lead=lead, interactions=interactions, property_prefs=prefs))

    logger.info("Generated %d synthetic leads (%d converted)", n, converted)
    return leads
