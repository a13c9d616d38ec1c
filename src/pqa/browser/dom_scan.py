"""JavaScript snippets evaluated in the target page by ``PlaywrightPageDriver``.

Every element returned by ``QUERY_JS`` is stamped with a ``data-pqa-ref``
attribute drawn from a page-global counter; the other snippets address
elements by that ref.  Refs survive re-renders that keep the node, so a set
of refs taken before submission identifies pre-existing containers.
"""

from __future__ import annotations

REF_ATTR = "data-pqa-ref"
MUTATION_BINDING = "__pqaNotifyMutation"

# Scan all matches of one selector.  Returns null for an invalid selector.
QUERY_JS = """
(selector) => {
    let nodes;
    try {
        nodes = Array.from(document.querySelectorAll(selector));
    } catch (e) {
        return null;
    }
    window.__pqaRefSeq = window.__pqaRefSeq || 0;
    const vw = window.innerWidth || document.documentElement.clientWidth || 0;

    function ref(el) {
        if (!el.getAttribute('data-pqa-ref')) {
            window.__pqaRefSeq += 1;
            el.setAttribute('data-pqa-ref', 'pqa-' + window.__pqaRefSeq);
        }
        return el.getAttribute('data-pqa-ref');
    }

    function styleHidden(el) {
        const style = window.getComputedStyle(el);
        return style.display === 'none' || style.visibility === 'hidden' || style.opacity === '0';
    }

    // Document-wide position so matches from different selectors compare.
    const position = new Map();
    if (nodes.length) {
        const all = document.getElementsByTagName('*');
        for (let j = 0; j < all.length; j++) position.set(all[j], j);
    }

    const spinner = '[role="progressbar"], [aria-busy="true"], .Loader, svg[aria-label="Loading"], '
        + '[data-testid*="spinner"], [data-testid*="loading"]';

    return nodes.map((el) => {
        const rect = el.getBoundingClientRect();
        const text = (el.innerText || el.textContent || el.value || '').trim();
        return {
            ref: ref(el),
            tag: el.tagName.toLowerCase(),
            text: text.substring(0, 200),
            text_length: text.length,
            aria_label: el.getAttribute('aria-label') || '',
            title: el.getAttribute('title') || '',
            class_name: el.getAttribute('class') || '',
            element_id: el.id || '',
            input_type: (el.getAttribute('type') || '').toLowerCase(),
            role: el.getAttribute('role') || '',
            testid: el.getAttribute('data-testid') || '',
            x: rect.left,
            y: rect.top,
            width: rect.width,
            height: rect.height,
            viewport_width: vw,
            has_box: rect.width > 0 && rect.height > 0,
            style_hidden: styleHidden(el),
            disabled: !!el.disabled || el.getAttribute('aria-disabled') === 'true',
            readonly: !!el.readOnly,
            content_editable: el.isContentEditable === true,
            in_form: !!el.closest('form'),
            has_icon: !!el.querySelector('svg, img, i[class*="icon" i]'),
            has_spinner: !!el.querySelector(spinner),
            dom_order: position.get(el) ?? 0,
        };
    });
}
"""

# Number of visible loading indicators among the given selectors.
COUNT_LOADING_JS = """
(selectors) => {
    let count = 0;
    for (const selector of selectors) {
        let nodes = [];
        try { nodes = document.querySelectorAll(selector); } catch (e) { continue; }
        nodes.forEach(el => {
            const rect = el.getBoundingClientRect();
            const style = window.getComputedStyle(el);
            if (rect.width > 0 && rect.height > 0 && style.display !== 'none' && style.visibility !== 'hidden') {
                count += 1;
            }
        });
    }
    return count;
}
"""

FOCUS_JS = """
(ref) => {
    const el = document.querySelector(`[data-pqa-ref="${ref}"]`);
    if (!el) return false;
    el.focus();
    return document.activeElement === el || el.contains(document.activeElement);
}
"""

# Clear and insert text.  execCommand keeps rich-text editors in sync; the
# fallback assigns the value through the native setter and fires input/change
# so framework-controlled fields notice.  Returns whether the text is present.
INSERT_TEXT_JS = """
([ref, text]) => {
    const el = document.querySelector(`[data-pqa-ref="${ref}"]`);
    if (!el) return false;
    const isField = el.tagName === 'TEXTAREA' || el.tagName === 'INPUT';
    const current = () => (isField ? el.value : el.innerText) || '';
    const probe = text.substring(0, 20);

    el.focus();
    let inserted = false;
    try {
        document.execCommand('selectAll', false, null);
        document.execCommand('delete', false, null);
        inserted = document.execCommand('insertText', false, text);
    } catch (e) {
        inserted = false;
    }

    if (!inserted || !current().includes(probe)) {
        if (isField) {
            const proto = el.tagName === 'TEXTAREA' ? HTMLTextAreaElement.prototype : HTMLInputElement.prototype;
            const setter = Object.getOwnPropertyDescriptor(proto, 'value').set;
            setter.call(el, text);
        } else {
            el.textContent = text;
        }
        el.dispatchEvent(new Event('input', { bubbles: true }));
        el.dispatchEvent(new Event('change', { bubbles: true }));
    }
    return current().includes(probe);
}
"""

READ_TEXT_JS = """
(ref) => {
    const el = document.querySelector(`[data-pqa-ref="${ref}"]`);
    if (!el) return null;
    if (el.tagName === 'TEXTAREA' || el.tagName === 'INPUT') return el.value || '';
    return el.innerText || '';
}
"""

SCROLL_INTO_VIEW_JS = """
(ref) => {
    const el = document.querySelector(`[data-pqa-ref="${ref}"]`);
    if (!el) return false;
    el.scrollIntoView({ block: 'center', inline: 'nearest' });
    return true;
}
"""

# Low-level pointer sequence for controls that ignore a synthetic click.
POINTER_CLICK_JS = """
(ref) => {
    const el = document.querySelector(`[data-pqa-ref="${ref}"]`);
    if (!el) return false;
    const rect = el.getBoundingClientRect();
    const opts = {
        bubbles: true,
        cancelable: true,
        view: window,
        clientX: rect.left + rect.width / 2,
        clientY: rect.top + rect.height / 2,
        button: 0,
    };
    el.dispatchEvent(new PointerEvent('pointerdown', opts));
    el.dispatchEvent(new MouseEvent('mousedown', opts));
    el.dispatchEvent(new PointerEvent('pointerup', opts));
    el.dispatchEvent(new MouseEvent('mouseup', opts));
    el.dispatchEvent(new MouseEvent('click', opts));
    return true;
}
"""

# Text length of a tracked container and whether a spinner is still inside it.
MEASURE_JS = """
(ref) => {
    const el = document.querySelector(`[data-pqa-ref="${ref}"]`);
    if (!el) return null;
    const spinner = '[role="progressbar"], [aria-busy="true"], .Loader, svg[aria-label="Loading"], '
        + '[data-testid*="spinner"], [data-testid*="loading"]';
    const text = (el.innerText || el.textContent || '').trim();
    return {
        text_length: text.length,
        busy: !!el.querySelector(spinner) || el.getAttribute('aria-busy') === 'true',
    };
}
"""

EXTRACT_JS = """
(ref) => {
    const el = document.querySelector(`[data-pqa-ref="${ref}"]`);
    if (!el) return null;
    return { html: el.innerHTML || '', text: (el.innerText || el.textContent || '').trim() };
}
"""

# Observe main (or body) and forward throttled notifications to the binding.
INSTALL_OBSERVER_JS = """
() => {
    if (window.__pqaObserver) return true;
    const root = document.querySelector('main') || document.body;
    if (!root) return false;
    let pending = false;
    window.__pqaObserver = new MutationObserver(() => {
        if (pending) return;
        pending = true;
        setTimeout(() => {
            pending = false;
            if (typeof window.__pqaNotifyMutation === 'function') {
                window.__pqaNotifyMutation();
            }
        }, 100);
    });
    window.__pqaObserver.observe(root, { childList: true, subtree: true, characterData: true });
    return true;
}
"""

REMOVE_OBSERVER_JS = """
() => {
    if (window.__pqaObserver) {
        window.__pqaObserver.disconnect();
        window.__pqaObserver = null;
    }
    return true;
}
"""
