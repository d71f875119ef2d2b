"""Billing sync portal: invoice sync, enrichment and batch actions over two upstream systems"""
