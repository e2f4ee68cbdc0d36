from __future__ import annotations

DEMO_LOCATION_ID = 'demo_restaurant_1'

# Hardhat's well-known development accounts; never funded on a live chain.
_MEATCO_PAYOUT = '0x70997970C51812dc3A010C7d01b50e0d17dc79C8'
_PRODUCECO_PAYOUT = '0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC'


def demo_state() -> dict:
    return {
        'restaurant': {
            'id': DEMO_LOCATION_ID,
            'name': 'Demo Restaurant',
            'timezone': 'America/New_York',
            'cadence': 'weekly',
            'planningHorizonDays': 7,
        },
        'ownerPrefs': {
            'strategy': 'balanced',
            'maxWastePercent': 5,
            'criticalSkus': ['chicken_breast', 'ground_beef'],
        },
        'suppliers': [
            {'supplierId': 'meatco', 'name': 'MeatCo', 'leadTimeDays': 2, 'payoutAddress': _MEATCO_PAYOUT},
            {'supplierId': 'produceco', 'name': 'ProduceCo', 'leadTimeDays': 1, 'payoutAddress': _PRODUCECO_PAYOUT},
        ],
        'skus': [
            {
                'sku': 'chicken_breast',
                'name': 'Chicken Breast',
                'unit': 'lb',
                'shelfLifeDays': 3,
                'supplierId': 'meatco',
                'unitCostUsd': 3.5,
            },
            {
                'sku': 'ground_beef',
                'name': 'Ground Beef',
                'unit': 'lb',
                'shelfLifeDays': 2,
                'supplierId': 'meatco',
                'unitCostUsd': 4.0,
            },
            {
                'sku': 'romaine_lettuce',
                'name': 'Romaine Lettuce',
                'unit': 'each',
                'shelfLifeDays': 5,
                'supplierId': 'produceco',
                'unitCostUsd': 1.25,
            },
        ],
        'inventory': [
            {'sku': 'chicken_breast', 'onHandUnits': 12},
            {'sku': 'ground_beef', 'onHandUnits': 8},
            {'sku': 'romaine_lettuce', 'onHandUnits': 20},
        ],
        'sales': {
            'windowDays': 7,
            'bySku': [
                {'sku': 'chicken_breast', 'unitsSold': 40},
                {'sku': 'ground_beef', 'unitsSold': 35},
                {'sku': 'romaine_lettuce', 'unitsSold': 22},
            ],
        },
        'context': {'season': 'winter', 'notes': 'Normal week'},
    }
