"""Telephony audio helpers.

Twilio Media Streams carry 8 kHz G.711 mu-law; the realtime model speaks
PCM16. Conversion here changes sample encoding only, never the rate.
"""
